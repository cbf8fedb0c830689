"""
Room Occupancy Manager：管理房間的 buyer / seller slot

職責：
1. 加入房間（指派 slot）
2. 離開房間（釋放 slot）
3. 查詢 slot 是否可用（只讀，給畫面用）
4. Session token 驗證、上線狀態

並發設計（最重要的 invariant：每個 (room, role) 最多一個人）：
- 「檢查 slot 是否空著」和「寫入 occupant」在同一個 transaction 內，
  而且先拿 room lock，所以同一個房間的 join 會排隊
- 資料庫有 (room_id, role) unique constraint 當最後防線
- 如果還是撞到 constraint（例如沒有行級鎖的環境），rollback 後自動重試一次；
  重試時檢查會看到贏家，回傳 RoleUnavailable

is_available() 只給畫面用，絕對不能當成 join 的唯一檢查
"""
from dataclasses import dataclass
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from uuid import UUID
from typing import List, Optional
import logging

from models import (
    Room,
    RoomOccupant,
    RoomStatus,
    Role,
    Transaction,
    TERMINAL_STATUSES,
    AuditAction,
    ActorRole,
    utcnow,
)
from config import get_settings
from core.locks import with_room_lock
from core.events import queue_event, EventType
from core.exceptions import (
    RoomNotFound,
    OccupantNotFound,
    RoleUnavailable,
    AlreadyOccupyingAnotherRoom,
    DuplicateRole,
    RoomExpired,
    ParticipantLocked,
)
from services.audit_service import AuditSink
from services.naming_service import generate_session_token
from database import transactional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParticipantInfo:
    """加入房間時提供的資料"""
    name: str
    contact: str
    # 跨房間辨識同一個人，沒有就不做跨房間檢查
    identifier: Optional[str] = None


def _role_unavailable_reason(role: Role, occupants: List[RoomOccupant]) -> Optional[str]:
    """
    判斷角色能不能加入，可以就回傳 None，不行回傳原因

    規則：
    - buyer：房間內還沒有 buyer
    - seller：房間內已經有 buyer，而且還沒有 seller
    """
    roles = {occupant.role for occupant in occupants}

    if role == Role.BUYER:
        if Role.BUYER in roles:
            return "This room already has a buyer"
        return None

    if Role.BUYER not in roles:
        return "A seller can only join after the buyer"
    if Role.SELLER in roles:
        return "This room already has a seller"
    return None


class RoomOccupancyManager:
    """Slot 指派 / 釋放"""

    @staticmethod
    def join(db: Session, room_id: UUID, role: Role, participant: ParticipantInfo) -> RoomOccupant:
        """
        加入房間（原子操作）

        流程：
        1. 在一個 transaction 內鎖房間、檢查、寫入
        2. 撞到 unique constraint（輸掉競爭）時 rollback 並重試，
           重試次數 = settings.join_conflict_retries
        3. 重試後仍然衝突 -> RoleUnavailable

        參數：
            db: SQLAlchemy Session（必須是最外層，不能在別的 @transactional 內呼叫）
            room_id: Room UUID
            role: Role.BUYER / Role.SELLER
            participant: 名稱、聯絡方式、識別碼

        返回：
            新的 RoomOccupant（含 session_token）

        異常：
            RoomNotFound: Room 不存在
            RoomExpired: Room 已過期
            RoleUnavailable: 角色已被佔用 / seller 在 buyer 之前加入 / 競爭失敗
            DuplicateRole: 同一個人已經在這個房間有角色
            AlreadyOccupyingAnotherRoom: 同一個人在另一個進行中的房間
        """
        role = Role(role)
        retries = get_settings().join_conflict_retries

        for attempt in range(retries + 1):
            try:
                return RoomOccupancyManager._join_once(db, room_id, role, participant)
            except IntegrityError:
                # @transactional 已經 rollback
                logger.warning(
                    f"Lost slot race for {role.value} in room {room_id} "
                    f"(attempt {attempt + 1}/{retries + 1})"
                )

        raise RoleUnavailable(f"The {role.value} slot was taken by a concurrent join")

    @staticmethod
    @transactional
    def _join_once(db: Session, room_id: UUID, role: Role, participant: ParticipantInfo) -> RoomOccupant:
        # 1. 取得並鎖定 Room
        room = with_room_lock(room_id, db).first()
        if not room:
            raise RoomNotFound(room_id)

        if room.is_expired():
            raise RoomExpired(f"Room {room.room_number} expired at {room.expires_at}")

        occupants = db.query(RoomOccupant).filter(RoomOccupant.room_id == room_id).all()

        # 2. 同一個人的檢查
        if participant.identifier:
            RoomOccupancyManager._check_participant(db, room, occupants, participant.identifier)

        # 3. 角色是否可用
        reason = _role_unavailable_reason(role, occupants)
        if reason:
            raise RoleUnavailable(reason)

        # 4. 建立 occupant（flush 時 unique constraint 生效）
        now = utcnow()
        occupant = RoomOccupant(
            room_id=room_id,
            role=role,
            name=participant.name,
            contact=participant.contact,
            identifier=participant.identifier,
            session_token=generate_session_token(),
            is_online=True,
            joined_at=now,
            last_seen=now
        )
        db.add(occupant)
        db.flush()

        # 5. 第一個人加入 -> in_use
        if room.status == RoomStatus.FREE:
            room.status = RoomStatus.IN_USE

        # 6. seller 加入時，補上進行中交易的 seller
        if role == Role.SELLER:
            active = db.query(Transaction).filter(
                Transaction.room_id == room_id,
                Transaction.status.notin_(list(TERMINAL_STATUSES))
            ).first()
            if active and active.seller_id is None:
                active.seller_id = occupant.id

        # 7. 稽核 + 事件
        AuditSink.record(
            db,
            room_id,
            AuditAction.JOINED_ROOM,
            participant.name,
            ActorRole(role.value),
            f"{participant.name} joined as {role.value}"
        )
        queue_event(db, EventType.SLOT_ASSIGNED, room_id, {
            "occupant_id": str(occupant.id),
            "role": role.value,
            "name": participant.name,
        })

        logger.info(f"Occupant {occupant.id} ({participant.name}) joined room {room_id} as {role.value}")
        return occupant

    @staticmethod
    def _check_participant(db: Session, room: Room, occupants: List[RoomOccupant], identifier: str) -> None:
        """
        同一個人（identifier）的限制

        - 已經在這個房間（任何角色） -> DuplicateRole
        - 在另一個房間，而那個房間最新的交易不是終止狀態（或還沒有交易）-> AlreadyOccupyingAnotherRoom
        """
        for occupant in occupants:
            if occupant.identifier == identifier:
                raise DuplicateRole(
                    f"Participant already holds the {occupant.role.value} role in room {room.room_number}"
                )

        elsewhere = db.query(RoomOccupant).filter(
            RoomOccupant.identifier == identifier,
            RoomOccupant.room_id != room.id
        ).all()

        for occupant in elsewhere:
            latest = db.query(Transaction).filter(
                Transaction.room_id == occupant.room_id
            ).order_by(Transaction.created_at.desc()).first()

            if latest is None or latest.status not in TERMINAL_STATUSES:
                raise AlreadyOccupyingAnotherRoom(
                    f"Participant is still active in room {occupant.room_id}"
                )

    @staticmethod
    @transactional
    def leave(db: Session, room_id: UUID, occupant_id: UUID) -> Room:
        """
        離開房間（釋放 slot）

        流程：
        1. 鎖定 Room，找到 occupant
        2. 如果 occupant 還綁在進行中的交易上 -> 拒絕
        3. 刪除 occupant；房間沒人了 -> free
        4. 記錄稽核 + 事件

        異常：
            RoomNotFound: Room 不存在
            OccupantNotFound: occupant 不在這個房間
            ParticipantLocked: occupant 是進行中交易的 buyer / seller
        """
        # 1. 取得並鎖定 Room
        room = with_room_lock(room_id, db).first()
        if not room:
            raise RoomNotFound(room_id)

        occupant = db.query(RoomOccupant).filter(
            RoomOccupant.id == occupant_id,
            RoomOccupant.room_id == room_id
        ).first()
        if not occupant:
            raise OccupantNotFound(occupant_id)

        # 2. 進行中交易的當事人不能離開
        bound = db.query(Transaction).filter(
            Transaction.room_id == room_id,
            Transaction.status.notin_(list(TERMINAL_STATUSES)),
            (Transaction.buyer_id == occupant.id) | (Transaction.seller_id == occupant.id)
        ).first()
        if bound:
            raise ParticipantLocked(
                f"{occupant.name} is a party to active transaction {bound.transaction_number}"
            )

        name, role = occupant.name, Role(occupant.role)

        # 3. 刪除 occupant
        db.delete(occupant)
        db.flush()

        remaining = db.query(RoomOccupant).filter(RoomOccupant.room_id == room_id).count()
        if remaining == 0:
            room.status = RoomStatus.FREE

        # 4. 稽核 + 事件
        AuditSink.record(
            db,
            room_id,
            AuditAction.LEFT_ROOM,
            name,
            ActorRole(role.value),
            f"{name} left the {role.value} slot"
        )
        queue_event(db, EventType.SLOT_RELEASED, room_id, {
            "occupant_id": str(occupant_id),
            "role": role.value,
        })

        logger.info(f"Occupant {occupant_id} left room {room_id}, {remaining} occupant(s) remain")
        return room

    @staticmethod
    def is_available(db: Session, room_id: UUID, role: Role) -> bool:
        """
        查詢角色是否可加入（只讀，給畫面用）

        注意：
            - 結果只是當下的快照，不能拿來當 join 的檢查
            - 過期的房間一律不可用

        異常：
            RoomNotFound: Room 不存在
        """
        room = db.query(Room).filter(Room.id == room_id).first()
        if not room:
            raise RoomNotFound(room_id)
        if room.is_expired():
            return False

        occupants = db.query(RoomOccupant).filter(RoomOccupant.room_id == room_id).all()
        return _role_unavailable_reason(Role(role), occupants) is None

    @staticmethod
    def get_occupant(db: Session, room_id: UUID, role: Role) -> Optional[RoomOccupant]:
        return db.query(RoomOccupant).filter(
            RoomOccupant.room_id == room_id,
            RoomOccupant.role == Role(role)
        ).first()

    @staticmethod
    def authenticate(db: Session, room_id: UUID, session_token: Optional[str]) -> RoomOccupant:
        """
        用 session token 找到房間內的 occupant

        異常：
            OccupantNotFound: token 不屬於這個房間
        """
        if not session_token:
            raise OccupantNotFound("(no session token)")

        occupant = db.query(RoomOccupant).filter(
            RoomOccupant.room_id == room_id,
            RoomOccupant.session_token == session_token
        ).first()
        if not occupant:
            raise OccupantNotFound("(invalid session token)")
        return occupant

    @staticmethod
    @transactional
    def touch(db: Session, occupant_id: UUID) -> RoomOccupant:
        """更新 last_seen 並標記為上線"""
        occupant = db.query(RoomOccupant).filter(RoomOccupant.id == occupant_id).first()
        if not occupant:
            raise OccupantNotFound(occupant_id)
        occupant.is_online = True
        occupant.last_seen = utcnow()
        return occupant

    @staticmethod
    @transactional
    def mark_offline(db: Session, occupant_id: UUID) -> RoomOccupant:
        """標記為離線（slot 仍保留）"""
        occupant = db.query(RoomOccupant).filter(RoomOccupant.id == occupant_id).first()
        if not occupant:
            raise OccupantNotFound(occupant_id)
        occupant.is_online = False
        occupant.last_seen = utcnow()
        return occupant
