"""
資料模型

四個核心集合：rooms / room_occupants / transactions / evidence_files
再加上 arbiters（GM 身分）與 audit_entries（只能新增的稽核紀錄）

唯一性約束都放在資料庫層，不只靠程式邏輯：
- room_occupants (room_id, role) 唯一：一個房間每個角色只能有一個人
- transactions 每個房間最多一筆非終止狀態的交易（partial unique index）
- evidence_files 每筆交易每種檔案最多一份 pending（partial unique index）
- audit_entries (room_id, sequence) 唯一：每個房間的稽核序號單調遞增
"""
import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import relationship, validates

from database import Base
from core.exceptions import AlreadyProcessed


def utcnow() -> datetime:
    # 一律存 naive UTC（SQLite 讀回來不帶時區）
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls, name):
    # 存 enum 的 value（"pending_payment"），partial index 的條件才寫得出來
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=40,
        values_callable=lambda members: [m.value for m in members],
    )


# ============ Enums ============

class RoomStatus(str, enum.Enum):
    FREE = "free"
    IN_USE = "in_use"


class Role(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"


class ActorRole(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"
    GM = "gm"
    SYSTEM = "system"


class TransactionStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    AWAITING_PAYMENT_VERIFICATION = "awaiting_payment_verification"
    PAYMENT_REJECTED = "payment_rejected"
    PAID = "paid"
    AWAITING_SHIPPING_VERIFICATION = "awaiting_shipping_verification"
    SHIPPING_REJECTED = "shipping_rejected"
    SHIPPED = "shipped"
    GOODS_RECEIVED = "goods_received"
    DELIVERED = "delivered"  # legacy alias of GOODS_RECEIVED
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
    TransactionStatus.DISPUTED,
})

IMMUTABLE_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
})


class EvidenceType(str, enum.Enum):
    PAYMENT_PROOF = "payment_proof"
    SHIPPING_RECEIPT = "shipping_receipt"
    IDENTITY_DOCUMENT = "identity_document"


class EvidenceStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class AuditAction(str, enum.Enum):
    ROOM_CREATED = "room_created"
    ROOM_EXTENDED = "room_extended"
    ROOM_RESET = "room_reset"
    JOINED_ROOM = "joined_room"
    LEFT_ROOM = "left_room"
    TRANSACTION_CREATED = "transaction_created"
    PAYMENT_PROOF_UPLOADED = "payment_proof_uploaded"
    SHIPPING_RECEIPT_UPLOADED = "shipping_receipt_uploaded"
    IDENTITY_DOCUMENT_UPLOADED = "identity_document_uploaded"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_REJECTED = "payment_rejected"
    SHIPPING_VERIFIED = "shipping_verified"
    SHIPPING_REJECTED = "shipping_rejected"
    IDENTITY_VERIFIED = "identity_document_verified"
    IDENTITY_REJECTED = "identity_document_rejected"
    GOODS_RECEIVED = "goods_received"
    FUNDS_RELEASED = "funds_released"
    TRANSACTION_CANCELLED = "transaction_cancelled"
    TRANSACTION_DISPUTED = "transaction_disputed"
    NOTES_UPDATED = "notes_updated"


_TERMINAL_SQL = "status NOT IN ('completed', 'cancelled', 'disputed')"
_PENDING_SQL = "status = 'pending'"


# ============ Models ============

class Room(Base):
    __tablename__ = "rooms"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    room_number = Column(String(20), nullable=False, unique=True)
    status = Column(_enum(RoomStatus, "room_status"), nullable=False, default=RoomStatus.FREE)
    expires_at = Column(DateTime, nullable=True)
    # 每寫一筆 AuditEntry 就 +1（在 room lock 內）
    audit_sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    occupants = relationship("RoomOccupant", back_populates="room", passive_deletes=True)
    transactions = relationship("Transaction", back_populates="room")

    def is_expired(self, now=None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


class RoomOccupant(Base):
    __tablename__ = "room_occupants"
    __table_args__ = (
        UniqueConstraint("room_id", "role", name="uq_room_occupants_room_role"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    room_id = Column(Uuid, ForeignKey("rooms.id"), nullable=False, index=True)
    role = Column(_enum(Role, "occupant_role"), nullable=False)
    name = Column(String(255), nullable=False)
    contact = Column(String(64), nullable=False)
    # 跨房間辨識同一個人（選填）
    identifier = Column(String(128), nullable=True, index=True)
    session_token = Column(String(64), nullable=False, unique=True)
    is_online = Column(Boolean, nullable=False, default=True)
    joined_at = Column(DateTime, nullable=False, default=utcnow)
    last_seen = Column(DateTime, nullable=True, default=utcnow)

    room = relationship("Room", back_populates="occupants")


class Arbiter(Base):
    __tablename__ = "arbiters"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index(
            "uq_transactions_room_active",
            "room_id",
            unique=True,
            sqlite_where=text(_TERMINAL_SQL),
            postgresql_where=text(_TERMINAL_SQL),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_number = Column(String(32), nullable=False, unique=True)
    room_id = Column(Uuid, ForeignKey("rooms.id"), nullable=False, index=True)
    buyer_id = Column(Uuid, ForeignKey("room_occupants.id", ondelete="SET NULL"), nullable=True)
    seller_id = Column(Uuid, ForeignKey("room_occupants.id", ondelete="SET NULL"), nullable=True)

    amount = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    currency = Column(String(3), nullable=False)
    commission = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    fee = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    total_amount = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))

    status = Column(
        _enum(TransactionStatus, "transaction_status"),
        nullable=False,
        default=TransactionStatus.PENDING_PAYMENT
    )
    payment_rejection_reason = Column(Text, nullable=True)
    shipping_rejection_reason = Column(Text, nullable=True)
    buyer_notes = Column(Text, nullable=True)
    gm_notes = Column(Text, nullable=True)
    status_reason = Column(Text, nullable=True)

    payment_verified_by = Column(Uuid, ForeignKey("arbiters.id"), nullable=True)
    payment_verified_at = Column(DateTime, nullable=True)
    shipping_verified_by = Column(Uuid, ForeignKey("arbiters.id"), nullable=True)
    shipping_verified_at = Column(DateTime, nullable=True)
    funds_released_by = Column(Uuid, ForeignKey("arbiters.id"), nullable=True)
    funds_released_at = Column(DateTime, nullable=True)

    paid_at = Column(DateTime, nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    room = relationship("Room", back_populates="transactions")
    buyer = relationship("RoomOccupant", foreign_keys=[buyer_id])
    seller = relationship("RoomOccupant", foreign_keys=[seller_id])
    files = relationship(
        "EvidenceFile",
        back_populates="transaction",
        order_by="EvidenceFile.created_at"
    )

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_STATUSES


class EvidenceFile(Base):
    __tablename__ = "evidence_files"
    __table_args__ = (
        Index(
            "uq_evidence_files_pending_per_type",
            "transaction_id",
            "file_type",
            unique=True,
            sqlite_where=text(_PENDING_SQL),
            postgresql_where=text(_PENDING_SQL),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id = Column(Uuid, ForeignKey("transactions.id"), nullable=False, index=True)
    room_id = Column(Uuid, ForeignKey("rooms.id"), nullable=False, index=True)
    file_type = Column(_enum(EvidenceType, "evidence_type"), nullable=False)
    # 只存 blob 的 reference 與 metadata，不存檔案內容
    blob_ref = Column(String(512), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_size = Column(Integer, nullable=False)
    mime_type = Column(String(128), nullable=False)
    uploaded_by = Column(_enum(Role, "uploader_role"), nullable=False)
    uploader_id = Column(Uuid, ForeignKey("room_occupants.id", ondelete="SET NULL"), nullable=True)
    status = Column(_enum(EvidenceStatus, "evidence_status"), nullable=False, default=EvidenceStatus.PENDING)
    verified_by = Column(Uuid, ForeignKey("arbiters.id"), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    transaction = relationship("Transaction", back_populates="files")

    @validates("status")
    def _validate_status(self, key, value):
        # verified / rejected 之後不能再改
        current = self.status
        if current is not None and current != EvidenceStatus.PENDING and value != current:
            raise AlreadyProcessed(
                f"Evidence file {self.id} is already {EvidenceStatus(current).value}"
            )
        return value


class AuditEntry(Base):
    __tablename__ = "audit_entries"
    __table_args__ = (
        UniqueConstraint("room_id", "sequence", name="uq_audit_entries_room_sequence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(Uuid, ForeignKey("rooms.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    action = Column(String(64), nullable=False)
    actor_name = Column(String(255), nullable=False)
    actor_role = Column(_enum(ActorRole, "actor_role"), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
