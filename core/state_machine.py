"""
交易狀態機：集中管理所有 Transaction 狀態轉換

標準路徑：
    pending_payment -> awaiting_payment_verification -> paid
    -> awaiting_shipping_verification -> shipped -> goods_received -> completed

駁回分支：
    awaiting_payment_verification -> payment_rejected -> (重新上傳) awaiting_payment_verification
    awaiting_shipping_verification -> shipping_rejected -> (重新上傳) awaiting_shipping_verification

管理動作：
    任何非終止狀態 -> cancelled / disputed

原則：
- 所有狀態變更都經過 _transition()，非法轉換一律丟 InvalidStateTransition
- 每個操作都是一個 @transactional 單位：先鎖 Room 再鎖 Transaction
- 每個成功的操作寫一筆 AuditEntry
- 失敗不會自動重試：被駁回的檔案要重新上傳，不是重新審核
"""
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Dict, FrozenSet, Optional
import logging

from models import (
    Transaction,
    TransactionStatus,
    EvidenceStatus,
    EvidenceType,
    TERMINAL_STATUSES,
    IMMUTABLE_STATUSES,
    Role,
    RoomOccupant,
    Arbiter,
    AuditAction,
    ActorRole,
    utcnow,
)
from config import get_settings
from core.locks import with_room_lock, with_transaction_lock, lock_pending_evidence
from core.events import queue_event, EventType
from core.exceptions import (
    RoomNotFound,
    TransactionNotFound,
    OccupantNotFound,
    InvalidStateTransition,
    ActiveTransactionExists,
    TransactionImmutable,
    NotAwaitingPaymentVerification,
    NotAwaitingShippingVerification,
    NotShipped,
    NotBuyer,
    NotReadyForRelease,
    MissingReason,
    EvidenceNotExpected,
)
from services import progress_service
from services.audit_service import AuditSink
from services.fee_service import calculate_totals
from services.naming_service import generate_transaction_number
from database import transactional

logger = logging.getLogger(__name__)

S = TransactionStatus

ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    S.PENDING_PAYMENT: frozenset({S.AWAITING_PAYMENT_VERIFICATION}),
    S.AWAITING_PAYMENT_VERIFICATION: frozenset({S.PAID, S.PAYMENT_REJECTED}),
    S.PAYMENT_REJECTED: frozenset({S.AWAITING_PAYMENT_VERIFICATION}),
    S.PAID: frozenset({S.AWAITING_SHIPPING_VERIFICATION}),
    S.AWAITING_SHIPPING_VERIFICATION: frozenset({S.SHIPPED, S.SHIPPING_REJECTED}),
    S.SHIPPING_REJECTED: frozenset({S.AWAITING_SHIPPING_VERIFICATION}),
    S.SHIPPED: frozenset({S.GOODS_RECEIVED}),
    S.GOODS_RECEIVED: frozenset({S.COMPLETED}),
    S.DELIVERED: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.DISPUTED: frozenset(),
}

# 管理動作：任何非終止狀態都可以取消 / 進入爭議
ADMINISTRATIVE_TARGETS = frozenset({S.CANCELLED, S.DISPUTED})

# 可以放款的狀態（delivered 是 goods_received 的舊名稱）
RELEASABLE_STATUSES = frozenset({S.GOODS_RECEIVED, S.DELIVERED})

# 可以（重新）上傳證明的狀態
PAYMENT_UPLOAD_STATUSES = frozenset({S.PENDING_PAYMENT, S.PAYMENT_REJECTED})
SHIPPING_UPLOAD_STATUSES = frozenset({S.PAID, S.SHIPPING_REJECTED})


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    current, target = S(current), S(target)
    if target in ADMINISTRATIVE_TARGETS:
        return current not in TERMINAL_STATUSES
    return target in ALLOWED_TRANSITIONS[current]


def _require_reason(reason: Optional[str]) -> str:
    if reason is None or not reason.strip():
        raise MissingReason()
    return reason.strip()


def _append_note(existing: Optional[str], label: str, notes: str) -> str:
    entry = f"[{label}] {notes}"
    return f"{existing}\n\n{entry}" if existing else entry


class TransactionStateMachine:
    """Transaction 狀態機"""

    # ============ 查詢 ============

    @staticmethod
    def get_transaction(db: Session, transaction_id: UUID) -> Transaction:
        transaction = db.query(Transaction).filter(Transaction.id == transaction_id).first()
        if not transaction:
            raise TransactionNotFound(transaction_id)
        return transaction

    @staticmethod
    def get_active_transaction(db: Session, room_id: UUID) -> Optional[Transaction]:
        """房間內進行中（非終止）的交易，最多一筆"""
        return db.query(Transaction).filter(
            Transaction.room_id == room_id,
            Transaction.status.notin_(list(TERMINAL_STATUSES))
        ).first()

    @staticmethod
    def get_latest_transaction(db: Session, room_id: UUID) -> Optional[Transaction]:
        """房間最新的一筆交易（包含已結束的）"""
        return db.query(Transaction).filter(
            Transaction.room_id == room_id
        ).order_by(Transaction.created_at.desc()).first()

    @staticmethod
    def progress_percentage(transaction: Transaction) -> int:
        return progress_service.progress_percentage(transaction.status)

    @staticmethod
    def current_action(transaction: Transaction) -> str:
        return progress_service.current_action(transaction.status)

    # ============ 建立 ============

    @staticmethod
    @transactional
    def open_transaction(
        db: Session,
        room_id: UUID,
        amount=0,
        currency: Optional[str] = None,
        commission=None,
        fee=None
    ) -> Transaction:
        """
        為房間開一筆新交易（status=pending_payment）

        流程：
        1. 鎖定 Room
        2. 確認沒有進行中的交易
        3. 計算金額、生成交易編號
        4. 帶入目前的 buyer / seller

        參數：
            db: SQLAlchemy Session
            room_id: Room UUID
            amount / commission / fee: 金額（commission、fee 沒給就用設定值計算）
            currency: 幣別，預設 settings.default_currency

        返回：
            新的 Transaction

        異常：
            RoomNotFound: Room 不存在
            ActiveTransactionExists: 房間已經有進行中的交易
        """
        settings = get_settings()

        # 1. 取得並鎖定 Room
        room = with_room_lock(room_id, db).first()
        if not room:
            raise RoomNotFound(room_id)

        # 2. 一個房間同時只能有一筆進行中的交易
        existing = TransactionStateMachine.get_active_transaction(db, room_id)
        if existing:
            raise ActiveTransactionExists(
                f"Room {room.room_number} already has active transaction {existing.transaction_number}"
            )

        # 3. 金額與編號
        amount, commission, fee, total = calculate_totals(
            amount, settings.commission_rate, settings.flat_fee, commission, fee
        )
        now = utcnow()
        number = generate_transaction_number(now)
        while db.query(Transaction).filter(Transaction.transaction_number == number).first():
            number = generate_transaction_number(now)

        # 4. 帶入參與者
        occupants = {
            occupant.role: occupant
            for occupant in db.query(RoomOccupant).filter(RoomOccupant.room_id == room_id).all()
        }
        buyer = occupants.get(Role.BUYER)
        seller = occupants.get(Role.SELLER)

        transaction = Transaction(
            transaction_number=number,
            room_id=room_id,
            buyer_id=buyer.id if buyer else None,
            seller_id=seller.id if seller else None,
            amount=amount,
            currency=currency or settings.default_currency,
            commission=commission,
            fee=fee,
            total_amount=total,
            status=S.PENDING_PAYMENT
        )
        db.add(transaction)
        try:
            db.flush()
        except IntegrityError:
            # partial unique index：有人同時開了交易
            raise ActiveTransactionExists(
                f"Room {room.room_number} already has an active transaction"
            ) from None

        AuditSink.record(
            db,
            room_id,
            AuditAction.TRANSACTION_CREATED,
            "System",
            ActorRole.SYSTEM,
            f"Transaction {number} opened for {transaction.currency} {total}"
        )
        logger.info(f"Opened transaction {transaction.id} ({number}) in room {room_id}")
        return transaction

    @staticmethod
    def get_or_open_transaction(db: Session, room_id: UUID) -> Transaction:
        """
        取得房間進行中的交易，沒有就用預設金額開一筆（第一次上傳證明時）

        注意：
            - 必須在外層 @transactional 內、且已經拿到 room lock 時呼叫
        """
        transaction = TransactionStateMachine.get_active_transaction(db, room_id)
        if transaction:
            return transaction
        return TransactionStateMachine.open_transaction(db, room_id)

    # ============ 內部工具 ============

    @staticmethod
    def _lock(db: Session, transaction_id: UUID) -> Transaction:
        """依 Room -> Transaction 的順序上鎖，回傳最新的 Transaction"""
        transaction = db.query(Transaction).filter(Transaction.id == transaction_id).first()
        if not transaction:
            raise TransactionNotFound(transaction_id)

        with_room_lock(transaction.room_id, db).first()
        # 先寫出尚未 flush 的變更，populate_existing 才不會蓋掉
        db.flush()
        transaction = with_transaction_lock(transaction_id, db).populate_existing().first()
        if not transaction:
            raise TransactionNotFound(transaction_id)
        return transaction

    @staticmethod
    def _transition(db: Session, transaction: Transaction, target: TransactionStatus) -> None:
        current = S(transaction.status)
        if current in IMMUTABLE_STATUSES:
            raise TransactionImmutable(
                f"Transaction {transaction.transaction_number} is {current.value}"
            )
        if not can_transition(current, target):
            raise InvalidStateTransition(
                f"Cannot transition transaction {transaction.transaction_number} "
                f"from {current.value} to {S(target).value}"
            )

        transaction.status = target
        queue_event(db, EventType.TRANSACTION_UPDATED, transaction.room_id, {
            "transaction_id": str(transaction.id),
            "from_status": current.value,
            "status": S(target).value,
            "progress": progress_service.progress_percentage(target),
            "current_action": progress_service.current_action(target),
        })
        logger.info(
            f"Transaction {transaction.id}: {current.value} -> {S(target).value}"
        )

    @staticmethod
    def _close_pending_evidence(db: Session, transaction: Transaction, arbiter: Arbiter, reason: str) -> int:
        """
        交易被取消 / 進入爭議時，把還在 pending 的檔案一併駁回

        注意：
            - 呼叫前必須已經鎖住 Room 和 Transaction（鎖的順序 Room -> Transaction -> EvidenceFile）

        返回：
            被駁回的檔案數量
        """
        pending = lock_pending_evidence(transaction.id, db).populate_existing().all()

        now = utcnow()
        for evidence in pending:
            evidence.status = EvidenceStatus.REJECTED
            evidence.verified_by = arbiter.id
            evidence.verified_at = now
            evidence.rejection_reason = reason
            queue_event(db, EventType.EVIDENCE_REJECTED, transaction.room_id, {
                "file_id": str(evidence.id),
                "transaction_id": str(transaction.id),
                "file_type": EvidenceType(evidence.file_type).value,
                "reason": reason,
            })

        if pending:
            logger.info(
                f"Closed {len(pending)} pending evidence file(s) of transaction {transaction.id}"
            )
        return len(pending)

    # ============ 上傳證明（由 EvidenceVerificationGateway 呼叫） ============

    @staticmethod
    @transactional
    def await_payment_verification(db: Session, transaction_id: UUID) -> Transaction:
        """
        收到付款證明：pending_payment / payment_rejected -> awaiting_payment_verification

        異常：
            EvidenceNotExpected: 目前狀態不接受付款證明
        """
        transaction = TransactionStateMachine._lock(db, transaction_id)
        if transaction.status not in PAYMENT_UPLOAD_STATUSES:
            raise EvidenceNotExpected(
                f"Payment proof is not expected while transaction is {S(transaction.status).value}"
            )
        TransactionStateMachine._transition(db, transaction, S.AWAITING_PAYMENT_VERIFICATION)
        transaction.payment_rejection_reason = None
        return transaction

    @staticmethod
    @transactional
    def await_shipping_verification(db: Session, transaction_id: UUID) -> Transaction:
        """
        收到出貨單據：paid / shipping_rejected -> awaiting_shipping_verification

        異常：
            EvidenceNotExpected: 目前狀態不接受出貨單據
        """
        transaction = TransactionStateMachine._lock(db, transaction_id)
        if transaction.status not in SHIPPING_UPLOAD_STATUSES:
            raise EvidenceNotExpected(
                f"Shipping receipt is not expected while transaction is {S(transaction.status).value}"
            )
        TransactionStateMachine._transition(db, transaction, S.AWAITING_SHIPPING_VERIFICATION)
        transaction.shipping_rejection_reason = None
        return transaction

    # ============ GM 審核 ============

    @staticmethod
    @transactional
    def verify_payment(db: Session, transaction_id: UUID, arbiter: Arbiter) -> Transaction:
        """
        GM 核准付款：awaiting_payment_verification -> paid

        異常：
            TransactionNotFound: 交易不存在
            NotAwaitingPaymentVerification: 狀態不是 awaiting_payment_verification
        """
        transaction = TransactionStateMachine._lock(db, transaction_id)
        if transaction.status != S.AWAITING_PAYMENT_VERIFICATION:
            raise NotAwaitingPaymentVerification(
                f"Transaction is {S(transaction.status).value}, not awaiting payment verification"
            )

        now = utcnow()
        TransactionStateMachine._transition(db, transaction, S.PAID)
        transaction.payment_verified_by = arbiter.id
        transaction.payment_verified_at = now
        transaction.paid_at = now

        AuditSink.record(
            db, transaction.room_id, AuditAction.PAYMENT_VERIFIED,
            arbiter.name, ActorRole.GM, "Payment proof verified by GM"
        )
        return transaction

    @staticmethod
    @transactional
    def reject_payment(db: Session, transaction_id: UUID, arbiter: Arbiter, reason: str) -> Transaction:
        """
        GM 駁回付款：awaiting_payment_verification -> payment_rejected

        異常：
            NotAwaitingPaymentVerification: 狀態不對
            MissingReason: 沒有填原因
        """
        transaction = TransactionStateMachine._lock(db, transaction_id)
        if transaction.status != S.AWAITING_PAYMENT_VERIFICATION:
            raise NotAwaitingPaymentVerification(
                f"Transaction is {S(transaction.status).value}, not awaiting payment verification"
            )
        reason = _require_reason(reason)

        TransactionStateMachine._transition(db, transaction, S.PAYMENT_REJECTED)
        transaction.payment_rejection_reason = reason

        AuditSink.record(
            db, transaction.room_id, AuditAction.PAYMENT_REJECTED,
            arbiter.name, ActorRole.GM, f"Payment proof rejected: {reason}"
        )
        return transaction

    @staticmethod
    @transactional
    def verify_shipping(db: Session, transaction_id: UUID, arbiter: Arbiter) -> Transaction:
        """
        GM 核准出貨：awaiting_shipping_verification -> shipped

        異常：
            NotAwaitingShippingVerification: 狀態不是 awaiting_shipping_verification
        """
        transaction = TransactionStateMachine._lock(db, transaction_id)
        if transaction.status != S.AWAITING_SHIPPING_VERIFICATION:
            raise NotAwaitingShippingVerification(
                f"Transaction is {S(transaction.status).value}, not awaiting shipping verification"
            )

        now = utcnow()
        TransactionStateMachine._transition(db, transaction, S.SHIPPED)
        transaction.shipping_verified_by = arbiter.id
        transaction.shipping_verified_at = now
        transaction.shipped_at = now

        AuditSink.record(
            db, transaction.room_id, AuditAction.SHIPPING_VERIFIED,
            arbiter.name, ActorRole.GM, "Shipping receipt verified by GM"
        )
        return transaction

    @staticmethod
    @transactional
    def reject_shipping(db: Session, transaction_id: UUID, arbiter: Arbiter, reason: str) -> Transaction:
        """
        GM 駁回出貨單據：awaiting_shipping_verification -> shipping_rejected

        異常：
            NotAwaitingShippingVerification: 狀態不對
            MissingReason: 沒有填原因
        """
        transaction = TransactionStateMachine._lock(db, transaction_id)
        if transaction.status != S.AWAITING_SHIPPING_VERIFICATION:
            raise NotAwaitingShippingVerification(
                f"Transaction is {S(transaction.status).value}, not awaiting shipping verification"
            )
        reason = _require_reason(reason)

        TransactionStateMachine._transition(db, transaction, S.SHIPPING_REJECTED)
        transaction.shipping_rejection_reason = reason

        AuditSink.record(
            db, transaction.room_id, AuditAction.SHIPPING_REJECTED,
            arbiter.name, ActorRole.GM, f"Shipping receipt rejected: {reason}"
        )
        return transaction

    # ============ 買家確認收貨 ============

    @staticmethod
    @transactional
    def confirm_receipt(
        db: Session,
        transaction_id: UUID,
        occupant_id: UUID,
        notes: Optional[str] = None
    ) -> Transaction:
        """
        買家確認收貨：shipped -> goods_received

        前置條件：
        1. 呼叫者必須是這筆交易的 buyer
        2. 狀態必須是 shipped

        異常：
            OccupantNotFound: occupant 不存在
            NotBuyer: 呼叫者不是這筆交易的 buyer
            NotShipped: 狀態不是 shipped
        """
        transaction = TransactionStateMachine._lock(db, transaction_id)

        occupant = db.query(RoomOccupant).filter(RoomOccupant.id == occupant_id).first()
        if not occupant:
            raise OccupantNotFound(occupant_id)
        if occupant.role != Role.BUYER or transaction.buyer_id != occupant.id:
            raise NotBuyer(f"{occupant.name} is not the buyer of this transaction")

        if transaction.status != S.SHIPPED:
            raise NotShipped(
                f"Transaction is {S(transaction.status).value}, goods have not been shipped"
            )

        TransactionStateMachine._transition(db, transaction, S.GOODS_RECEIVED)
        transaction.delivered_at = utcnow()
        if notes and notes.strip():
            transaction.buyer_notes = notes.strip()

        description = "Buyer confirmed receipt of goods."
        if notes and notes.strip():
            description += f" Notes: {notes.strip()}"
        AuditSink.record(
            db, transaction.room_id, AuditAction.GOODS_RECEIVED,
            occupant.name, ActorRole.BUYER, description
        )
        return transaction

    # ============ 放款 ============

    @staticmethod
    @transactional
    def release_funds(
        db: Session,
        transaction_id: UUID,
        arbiter: Arbiter,
        notes: Optional[str] = None
    ) -> Transaction:
        """
        放款並完成交易：goods_received / delivered -> completed

        重複放款的保護就在這裡：
        - 交易列被鎖住，兩個同時的請求會排隊
        - 第二個請求看到的狀態已經是 completed，不在可放款的集合內 -> NotReadyForRelease

        一般情況請透過 FundReleaseAuthority 呼叫（會檢查 GM 身分）

        異常：
            TransactionNotFound: 交易不存在
            NotReadyForRelease: 狀態不是 goods_received / delivered
        """
        transaction = TransactionStateMachine._lock(db, transaction_id)
        if transaction.status not in RELEASABLE_STATUSES:
            raise NotReadyForRelease(
                f"Transaction {transaction.transaction_number} is "
                f"{S(transaction.status).value}, not ready for fund release"
            )

        now = utcnow()
        TransactionStateMachine._transition(db, transaction, S.COMPLETED)
        transaction.funds_released_by = arbiter.id
        transaction.funds_released_at = now
        transaction.completed_at = now
        if notes and notes.strip():
            transaction.gm_notes = _append_note(transaction.gm_notes, "Fund Release", notes.strip())

        AuditSink.record(
            db, transaction.room_id, AuditAction.FUNDS_RELEASED,
            arbiter.name, ActorRole.GM, "Funds released and transaction completed"
        )
        return transaction

    # ============ 管理動作 ============

    @staticmethod
    @transactional
    def cancel(db: Session, transaction_id: UUID, arbiter: Arbiter, reason: str) -> Transaction:
        """
        GM 取消交易（任何非終止狀態）

        還在 pending 的檔案會一起駁回（原因同取消原因）

        異常：
            MissingReason: 沒有填原因
            TransactionImmutable: 已完成 / 已取消
            InvalidStateTransition: 已在爭議中
        """
        reason = _require_reason(reason)
        transaction = TransactionStateMachine._lock(db, transaction_id)

        TransactionStateMachine._transition(db, transaction, S.CANCELLED)
        transaction.cancelled_at = utcnow()
        transaction.status_reason = reason
        TransactionStateMachine._close_pending_evidence(db, transaction, arbiter, reason)

        AuditSink.record(
            db, transaction.room_id, AuditAction.TRANSACTION_CANCELLED,
            arbiter.name, ActorRole.GM, f"Transaction cancelled: {reason}"
        )
        return transaction

    @staticmethod
    @transactional
    def dispute(db: Session, transaction_id: UUID, arbiter: Arbiter, reason: str) -> Transaction:
        """
        GM 將交易標記為爭議（任何非終止狀態）

        還在 pending 的檔案會一起駁回（原因同爭議原因）

        異常：
            MissingReason: 沒有填原因
            TransactionImmutable / InvalidStateTransition: 已經是終止狀態
        """
        reason = _require_reason(reason)
        transaction = TransactionStateMachine._lock(db, transaction_id)

        TransactionStateMachine._transition(db, transaction, S.DISPUTED)
        transaction.status_reason = reason
        TransactionStateMachine._close_pending_evidence(db, transaction, arbiter, reason)

        AuditSink.record(
            db, transaction.room_id, AuditAction.TRANSACTION_DISPUTED,
            arbiter.name, ActorRole.GM, f"Transaction disputed: {reason}"
        )
        return transaction

    @staticmethod
    @transactional
    def update_notes(db: Session, transaction_id: UUID, arbiter: Arbiter, notes: str) -> Transaction:
        """
        GM 追加備註（不改變狀態）

        異常：
            MissingReason: 備註為空白
            TransactionImmutable: 已完成 / 已取消
        """
        if not notes or not notes.strip():
            raise MissingReason("Notes must not be empty")

        transaction = TransactionStateMachine._lock(db, transaction_id)
        if transaction.status in IMMUTABLE_STATUSES:
            raise TransactionImmutable(
                f"Transaction {transaction.transaction_number} is {S(transaction.status).value}"
            )

        transaction.gm_notes = _append_note(transaction.gm_notes, arbiter.name, notes.strip())
        AuditSink.record(
            db, transaction.room_id, AuditAction.NOTES_UPDATED,
            arbiter.name, ActorRole.GM, "GM notes updated"
        )
        return transaction
