"""
Room Manager：管理 Room 的完整生命週期

職責：
1. 建立 Room（provisioning，含預設到期時間）
2. 延長 Room 的到期時間
3. GM 重設 Room（清空所有 slot）
4. 查詢 Room 資訊

slot 的指派 / 釋放不在這裡，由 RoomOccupancyManager 負責

原則：
- 單一職責：只管 Room 本身，不管 slot、不管交易狀態
- 資料結構優先：先檢查資料是否符合要求，再執行操作
"""
from datetime import timedelta
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Optional
import logging

from models import (
    Room,
    RoomOccupant,
    RoomStatus,
    Transaction,
    TERMINAL_STATUSES,
    AuditAction,
    ActorRole,
    Arbiter,
    utcnow,
)
from config import get_settings
from core.locks import with_room_lock
from core.events import queue_event, EventType
from core.exceptions import RoomNotFound, ParticipantLocked, MissingReason
from services.audit_service import AuditSink
from services.naming_service import generate_room_number
from database import transactional

logger = logging.getLogger(__name__)


class RoomManager:
    """Room 生命週期管理器"""

    @staticmethod
    @transactional
    def create_room(
        db: Session,
        arbiter: Optional[Arbiter] = None,
        ttl_days: Optional[int] = None
    ) -> Room:
        """
        建立新房間

        流程：
        1. 生成唯一的房間編號
        2. 建立 Room（status=free，expires_at = now + ttl）
        3. 記錄稽核

        參數：
            db: SQLAlchemy Session
            arbiter: 建立房間的 GM（None 表示系統建立）
            ttl_days: 有效天數，預設 settings.room_ttl_days

        返回：
            Room

        注意：
            - 使用 @transactional，自動處理 commit/rollback
            - Room number 碰撞機率極低，但仍會檢查唯一性
        """
        settings = get_settings()
        ttl_days = settings.room_ttl_days if ttl_days is None else ttl_days

        # 1. 生成唯一的房間編號
        room_number = generate_room_number()
        while db.query(Room).filter(Room.room_number == room_number).first():
            room_number = generate_room_number()
            logger.warning(f"Room number collision detected, regenerating: {room_number}")

        # 2. 建立 Room
        room = Room(
            room_number=room_number,
            status=RoomStatus.FREE,
            expires_at=utcnow() + timedelta(days=ttl_days),
            audit_sequence=0
        )
        db.add(room)
        db.flush()  # 取得 room.id

        logger.info(f"Created room {room.id} with number {room_number}")

        # 3. 記錄稽核
        AuditSink.record(
            db,
            room.id,
            AuditAction.ROOM_CREATED,
            arbiter.name if arbiter else "System",
            ActorRole.GM if arbiter else ActorRole.SYSTEM,
            f"Room {room_number} created, expires in {ttl_days} day(s)"
        )

        return room

    @staticmethod
    @transactional
    def extend_room(db: Session, room_id: UUID, days: int, arbiter: Optional[Arbiter] = None) -> Room:
        """
        延長房間有效期

        規則：
        - 尚未過期：從原本的 expires_at 往後延
        - 已經過期：從現在往後延

        異常：
            RoomNotFound: Room 不存在
            ValueError: days <= 0
        """
        if days <= 0:
            raise ValueError(f"days must be positive, got {days}")

        room = with_room_lock(room_id, db).first()
        if not room:
            raise RoomNotFound(room_id)

        now = utcnow()
        base = room.expires_at if room.expires_at and room.expires_at > now else now
        room.expires_at = base + timedelta(days=days)

        AuditSink.record(
            db,
            room.id,
            AuditAction.ROOM_EXTENDED,
            arbiter.name if arbiter else "System",
            ActorRole.GM if arbiter else ActorRole.SYSTEM,
            f"Room extended by {days} day(s)"
        )
        logger.info(f"Room {room_id} extended to {room.expires_at}")
        return room

    @staticmethod
    @transactional
    def reset_room(db: Session, room_id: UUID, arbiter: Arbiter, reason: str) -> Room:
        """
        GM 重設房間（移除所有參與者，狀態回到 free）

        前置條件：
        1. Room 必須存在
        2. 必須提供原因
        3. 房間內沒有進行中的交易（先取消或完成交易）

        異常：
            RoomNotFound: Room 不存在
            MissingReason: 原因為空白
            ParticipantLocked: 還有進行中的交易
        """
        if not reason or not reason.strip():
            raise MissingReason("A reason is required to reset a room")

        # 1. 取得並鎖定 Room
        room = with_room_lock(room_id, db).first()
        if not room:
            raise RoomNotFound(room_id)

        # 2. 檢查進行中的交易
        active = db.query(Transaction).filter(
            Transaction.room_id == room_id,
            Transaction.status.notin_(list(TERMINAL_STATUSES))
        ).first()
        if active:
            raise ParticipantLocked(
                f"Room {room.room_number} has active transaction {active.transaction_number}"
            )

        # 3. 清空 slot
        occupants = db.query(RoomOccupant).filter(RoomOccupant.room_id == room_id).all()
        for occupant in occupants:
            db.delete(occupant)
        room.status = RoomStatus.FREE
        db.flush()

        AuditSink.record(
            db,
            room.id,
            AuditAction.ROOM_RESET,
            arbiter.name,
            ActorRole.GM,
            f"Room reset: {reason.strip()}"
        )
        for occupant in occupants:
            queue_event(db, EventType.SLOT_RELEASED, room.id, {
                "occupant_id": str(occupant.id),
                "role": occupant.role.value,
            })

        logger.info(f"Room {room_id} reset by GM {arbiter.id}, removed {len(occupants)} occupant(s)")
        return room

    @staticmethod
    def get_room_by_number(db: Session, room_number: str) -> Room:
        """
        透過房間編號取得 Room

        異常：
            RoomNotFound: Room 不存在
        """
        room = db.query(Room).filter(Room.room_number == room_number).first()
        if not room:
            raise RoomNotFound(f"Room with number {room_number}")
        return room

    @staticmethod
    def get_room_by_id(db: Session, room_id: UUID) -> Room:
        """
        透過 UUID 取得 Room

        異常：
            RoomNotFound: Room 不存在
        """
        room = db.query(Room).filter(Room.id == room_id).first()
        if not room:
            raise RoomNotFound(room_id)
        return room

    @staticmethod
    def get_occupant_count(db: Session, room_id: UUID) -> int:
        """取得房間內參與者數量（0-2）"""
        return db.query(RoomOccupant).filter(RoomOccupant.room_id == room_id).count()
