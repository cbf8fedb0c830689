"""
並發控制工具

提供 Database-level 的鎖定機制，防止競態條件（Race Condition）

主要使用 PostgreSQL 的 SELECT ... FOR UPDATE 來實現悲觀鎖（Pessimistic Locking）
SQLite 會忽略 FOR UPDATE，改由 database.create_db_engine 的 BEGIN IMMEDIATE 序列化寫入

鎖定順序固定為 Room -> Transaction -> EvidenceFile，避免 deadlock
"""
from sqlalchemy.orm import Session, Query
from uuid import UUID

from models import Room, Transaction, EvidenceFile, EvidenceStatus


def with_room_lock(room_id: UUID, db: Session) -> Query:
    """
    鎖定一個 Room（行級鎖）

    使用場景：
    - 指派 / 釋放 buyer、seller slot
    - 寫入 AuditEntry（序號存在 Room 上）
    - 任何會改變交易狀態的操作（先鎖 Room 再鎖 Transaction）

    範例：
        room = with_room_lock(room_id, db).first()
        if not room:
            raise RoomNotFound(room_id)
        room.status = RoomStatus.IN_USE

    參數：
        room_id: Room 的 UUID
        db: SQLAlchemy Session

    返回：
        Query object（需要呼叫 .first() 或 .one() 來取得結果）

    注意：
        - nowait=False 表示如果鎖被佔用，會等待
        - 必須在 transaction 內使用（確保有 commit 或 rollback）
        - 同一個 transaction 內重複鎖定同一列是安全的
    """
    return db.query(Room).filter(
        Room.id == room_id
    ).with_for_update(nowait=False)


def with_transaction_lock(transaction_id: UUID, db: Session) -> Query:
    """
    鎖定一筆 Transaction（行級鎖）

    使用場景：
    - 檢查並修改交易狀態時（verify / reject / confirm / release）
    - 防止重複放款：兩個 release 請求會在這裡排隊，第二個看到的已經是 completed

    參數：
        transaction_id: Transaction UUID
        db: SQLAlchemy Session

    返回：
        Query object（需要呼叫 .first() 或 .one() 來取得結果）
    """
    return db.query(Transaction).filter(
        Transaction.id == transaction_id
    ).with_for_update(nowait=False)


def with_evidence_lock(file_id: UUID, db: Session) -> Query:
    """
    鎖定一份 EvidenceFile（行級鎖）

    使用場景：
    - GM 審核檔案時，確保同一份檔案不會被同時核准又駁回

    參數：
        file_id: EvidenceFile UUID
        db: SQLAlchemy Session
    """
    return db.query(EvidenceFile).filter(
        EvidenceFile.id == file_id
    ).with_for_update(nowait=False)


def lock_pending_evidence(transaction_id: UUID, db: Session) -> Query:
    """
    鎖定一筆交易所有 pending 的 EvidenceFile（用於批次操作）

    使用場景：
    - 交易被取消 / 進入爭議時，一次駁回所有還在等待審核的檔案

    參數：
        transaction_id: Transaction UUID
        db: SQLAlchemy Session

    返回：
        Query object（呼叫 .all() 取得所有結果）
    """
    return db.query(EvidenceFile).filter(
        EvidenceFile.transaction_id == transaction_id,
        EvidenceFile.status == EvidenceStatus.PENDING
    ).with_for_update(nowait=False)
