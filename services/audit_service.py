"""
稽核服務：只能新增的 Audit Trail

每個房間有自己的單調遞增序號（Room.audit_sequence），
在 room lock 內分配，所以稽核紀錄的順序跟操作 commit 的順序一致

不負責 commit：紀錄跟造成它的操作在同一個 transaction 內
"""
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from models import AuditEntry, AuditAction, ActorRole
from core.locks import with_room_lock
from core.exceptions import RoomNotFound


class AuditSink:
    """Audit Sink"""

    @staticmethod
    def record(
        db: Session,
        room_id: UUID,
        action: AuditAction,
        actor_name: str,
        actor_role: ActorRole,
        description: Optional[str] = None
    ) -> AuditEntry:
        """
        新增一筆稽核紀錄

        參數：
            db: SQLAlchemy Session
            room_id: 房間 UUID
            action: 動作代碼
            actor_name: 執行者名稱
            actor_role: buyer / seller / gm / system
            description: 說明文字

        返回：
            AuditEntry（尚未 commit）

        異常：
            RoomNotFound: Room 不存在
        """
        # 序號必須讀到鎖定後的最新值
        db.flush()
        room = with_room_lock(room_id, db).populate_existing().first()
        if not room:
            raise RoomNotFound(room_id)

        room.audit_sequence = (room.audit_sequence or 0) + 1

        entry = AuditEntry(
            room_id=room_id,
            sequence=room.audit_sequence,
            action=AuditAction(action).value,
            actor_name=actor_name,
            actor_role=actor_role,
            description=description
        )
        db.add(entry)
        db.flush()  # 交由外層 transaction 處理 commit
        return entry

    @staticmethod
    def entries_for_room(
        db: Session,
        room_id: UUID,
        limit: Optional[int] = None
    ) -> List[AuditEntry]:
        """依序號排序的房間稽核紀錄；有 limit 時回傳最新的 N 筆（仍為遞增順序）"""
        query = db.query(AuditEntry).filter(AuditEntry.room_id == room_id)
        if limit is None:
            return query.order_by(AuditEntry.sequence).all()

        latest = query.order_by(AuditEntry.sequence.desc()).limit(limit).all()
        return list(reversed(latest))
