"""
Evidence Verification Gateway：證明檔案的上傳與 GM 審核

職責：
1. 接收 buyer / seller 上傳的檔案（付款證明、出貨單據、身分證件）
2. 讓 GM 核准或駁回 pending 的檔案
3. 依檔案種類把結果轉給 TransactionStateMachine

檔案種類與狀態轉換的對應集中在 EVIDENCE_ROUTES，新增一種檔案只需要加一筆 route

原子性：
- 「檔案狀態改變」和「交易狀態改變」在同一個 transaction 內
- 任何一步失敗，兩邊都不生效（由外層 @transactional rollback）
"""
from dataclasses import dataclass
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Callable, Dict, FrozenSet, List, Optional
import logging

from models import (
    EvidenceFile,
    EvidenceStatus,
    EvidenceType,
    RoomOccupant,
    Role,
    AuditAction,
    ActorRole,
    utcnow,
)
from config import get_settings
from core.locks import with_room_lock, with_transaction_lock, with_evidence_lock
from core.events import queue_event, EventType
from core.exceptions import (
    RoomNotFound,
    OccupantNotFound,
    EvidenceNotFound,
    EvidenceAlreadyPending,
    EvidenceNotExpected,
    InvalidEvidenceFile,
    UploaderNotPermitted,
    AlreadyProcessed,
    WrongType,
    MissingReason,
)
from core.state_machine import TransactionStateMachine
from services.arbiter_service import require_active_arbiter
from services.audit_service import AuditSink
from services.evidence_store import EvidenceBlob, EvidenceStore
from database import transactional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvidenceRoute:
    """一種檔案的上傳權限、狀態轉換與稽核代碼"""
    file_type: EvidenceType
    uploader_roles: FrozenSet[Role]
    uploaded_action: AuditAction
    verified_action: AuditAction
    rejected_action: AuditAction
    # None 表示這種檔案不影響交易狀態
    on_submit: Optional[Callable] = None
    on_verify: Optional[Callable] = None
    on_reject: Optional[Callable] = None


EVIDENCE_ROUTES: Dict[EvidenceType, EvidenceRoute] = {
    EvidenceType.PAYMENT_PROOF: EvidenceRoute(
        file_type=EvidenceType.PAYMENT_PROOF,
        uploader_roles=frozenset({Role.BUYER}),
        uploaded_action=AuditAction.PAYMENT_PROOF_UPLOADED,
        verified_action=AuditAction.PAYMENT_VERIFIED,
        rejected_action=AuditAction.PAYMENT_REJECTED,
        on_submit=TransactionStateMachine.await_payment_verification,
        on_verify=TransactionStateMachine.verify_payment,
        on_reject=TransactionStateMachine.reject_payment,
    ),
    EvidenceType.SHIPPING_RECEIPT: EvidenceRoute(
        file_type=EvidenceType.SHIPPING_RECEIPT,
        uploader_roles=frozenset({Role.SELLER}),
        uploaded_action=AuditAction.SHIPPING_RECEIPT_UPLOADED,
        verified_action=AuditAction.SHIPPING_VERIFIED,
        rejected_action=AuditAction.SHIPPING_REJECTED,
        on_submit=TransactionStateMachine.await_shipping_verification,
        on_verify=TransactionStateMachine.verify_shipping,
        on_reject=TransactionStateMachine.reject_shipping,
    ),
    EvidenceType.IDENTITY_DOCUMENT: EvidenceRoute(
        file_type=EvidenceType.IDENTITY_DOCUMENT,
        uploader_roles=frozenset({Role.BUYER, Role.SELLER}),
        uploaded_action=AuditAction.IDENTITY_DOCUMENT_UPLOADED,
        verified_action=AuditAction.IDENTITY_VERIFIED,
        rejected_action=AuditAction.IDENTITY_REJECTED,
    ),
}


def validate_blob(blob: EvidenceBlob) -> None:
    """
    檢查檔案大小與格式

    異常：
        InvalidEvidenceFile: 空檔案、超過大小上限、或 MIME type 不允許
    """
    settings = get_settings()

    if blob.size == 0:
        raise InvalidEvidenceFile("Uploaded file is empty")
    if blob.size > settings.max_evidence_bytes:
        raise InvalidEvidenceFile(
            f"File is {blob.size} bytes, the limit is {settings.max_evidence_bytes} bytes"
        )
    if blob.mime_type not in settings.allowed_evidence_mime_types:
        raise InvalidEvidenceFile(f"File type {blob.mime_type} is not allowed")


class EvidenceVerificationGateway:
    """證明檔案上傳 / 審核"""

    @staticmethod
    def submit(
        db: Session,
        room_id: UUID,
        occupant_id: UUID,
        file_type: EvidenceType,
        blob: EvidenceBlob,
        store: EvidenceStore
    ) -> EvidenceFile:
        """
        上傳證明檔案

        流程：
        1. 檢查檔案大小 / 格式
        2. 把檔案存進 EvidenceStore
        3. 在一個 transaction 內：檢查權限、建立 EvidenceFile、推進交易狀態
        4. 資料庫寫入失敗 -> 刪掉剛存的檔案

        參數：
            db: SQLAlchemy Session
            room_id: Room UUID
            occupant_id: 上傳者（RoomOccupant UUID）
            file_type: payment_proof / shipping_receipt / identity_document
            blob: 檔案內容與 metadata
            store: 檔案儲存位置

        返回：
            EvidenceFile（status=pending）

        異常：
            InvalidEvidenceFile: 檔案太大或格式不允許
            RoomNotFound / OccupantNotFound: 房間或上傳者不存在
            UploaderNotPermitted: 這個角色不能上傳這種檔案
            EvidenceAlreadyPending: 同種類已有一份等待審核
            EvidenceNotExpected: 交易目前的狀態不接受這種檔案，或上傳身分證件時沒有進行中的交易
        """
        file_type = EvidenceType(file_type)
        validate_blob(blob)

        stored = store.put(blob, f"rooms/{room_id}/{file_type.value}")
        try:
            return EvidenceVerificationGateway._record_submission(
                db, room_id, occupant_id, file_type, stored
            )
        except Exception:
            store.delete(stored.ref)
            raise

    @staticmethod
    @transactional
    def _record_submission(db: Session, room_id: UUID, occupant_id: UUID, file_type: EvidenceType, stored) -> EvidenceFile:
        route = EVIDENCE_ROUTES[file_type]

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

        # 2. 上傳權限
        role = Role(occupant.role)
        if role not in route.uploader_roles:
            raise UploaderNotPermitted(f"A {role.value} may not upload a {file_type.value}")

        # 3. 進行中的交易（會推進狀態的檔案第一次上傳時才建立，身分證件不開新交易）
        if route.on_submit:
            transaction = TransactionStateMachine.get_or_open_transaction(db, room_id)
        else:
            transaction = TransactionStateMachine.get_active_transaction(db, room_id)
            if not transaction:
                raise EvidenceNotExpected(
                    f"A {file_type.value} needs an active transaction in room {room.room_number}"
                )
        transaction = with_transaction_lock(transaction.id, db).first()
        if role == Role.BUYER and transaction.buyer_id is None:
            transaction.buyer_id = occupant.id
        if role == Role.SELLER and transaction.seller_id is None:
            transaction.seller_id = occupant.id

        # 4. 同種類只能有一份 pending
        pending = db.query(EvidenceFile).filter(
            EvidenceFile.transaction_id == transaction.id,
            EvidenceFile.file_type == file_type,
            EvidenceFile.status == EvidenceStatus.PENDING
        ).first()
        if pending:
            raise EvidenceAlreadyPending(
                f"A {file_type.value} is already waiting for GM verification"
            )

        # 5. 交易狀態轉換
        if route.on_submit:
            route.on_submit(db, transaction.id)

        # 6. 建立 EvidenceFile（partial unique index 是最後防線）
        evidence = EvidenceFile(
            transaction_id=transaction.id,
            room_id=room_id,
            file_type=file_type,
            blob_ref=stored.ref,
            file_name=stored.name,
            file_size=stored.size,
            mime_type=stored.mime_type,
            uploaded_by=role,
            uploader_id=occupant.id,
            status=EvidenceStatus.PENDING
        )
        db.add(evidence)
        try:
            db.flush()
        except IntegrityError:
            raise EvidenceAlreadyPending(
                f"A {file_type.value} is already waiting for GM verification"
            ) from None

        # 7. 稽核 + 事件
        AuditSink.record(
            db,
            room_id,
            route.uploaded_action,
            occupant.name,
            ActorRole(role.value),
            f"{occupant.name} uploaded {file_type.value.replace('_', ' ')}: {stored.name}"
        )
        queue_event(db, EventType.EVIDENCE_SUBMITTED, room_id, {
            "file_id": str(evidence.id),
            "transaction_id": str(transaction.id),
            "file_type": file_type.value,
            "uploaded_by": role.value,
        })

        logger.info(f"Evidence {evidence.id} ({file_type.value}) submitted for transaction {transaction.id}")
        return evidence

    @staticmethod
    def _load_for_review(db: Session, file_id: UUID, expected_type: Optional[EvidenceType]) -> EvidenceFile:
        """依 Room -> Transaction -> EvidenceFile 的順序上鎖，並檢查種類與狀態"""
        evidence = db.query(EvidenceFile).filter(EvidenceFile.id == file_id).first()
        if not evidence:
            raise EvidenceNotFound(file_id)

        with_room_lock(evidence.room_id, db).first()
        with_transaction_lock(evidence.transaction_id, db).first()
        db.flush()
        evidence = with_evidence_lock(file_id, db).populate_existing().first()

        if expected_type is not None and evidence.file_type != EvidenceType(expected_type):
            raise WrongType(
                f"File {file_id} is a {EvidenceType(evidence.file_type).value}, "
                f"not a {EvidenceType(expected_type).value}"
            )
        if evidence.status != EvidenceStatus.PENDING:
            raise AlreadyProcessed(
                f"File {file_id} is already {EvidenceStatus(evidence.status).value}"
            )
        return evidence

    @staticmethod
    @transactional
    def approve(
        db: Session,
        file_id: UUID,
        arbiter_id: UUID,
        expected_type: Optional[EvidenceType] = None
    ) -> EvidenceFile:
        """
        GM 核准檔案

        檢查順序：
        1. 呼叫者是啟用中的 GM（NotArbiter）
        2. 檔案存在（EvidenceNotFound）
        3. 種類符合（WrongType，只在指定 expected_type 時檢查）
        4. 檔案還是 pending（AlreadyProcessed）
        5. 交易狀態允許（NotAwaitingPaymentVerification / NotAwaitingShippingVerification）

        返回：
            EvidenceFile（status=verified）
        """
        arbiter = require_active_arbiter(db, arbiter_id)
        evidence = EvidenceVerificationGateway._load_for_review(db, file_id, expected_type)
        route = EVIDENCE_ROUTES[EvidenceType(evidence.file_type)]

        if route.on_verify:
            route.on_verify(db, evidence.transaction_id, arbiter)
        else:
            # 有狀態轉換的 route 由 TransactionStateMachine 寫稽核
            AuditSink.record(
                db, evidence.room_id, route.verified_action,
                arbiter.name, ActorRole.GM,
                f"{route.file_type.value.replace('_', ' ').capitalize()} verified by GM"
            )

        evidence.status = EvidenceStatus.VERIFIED
        evidence.verified_by = arbiter.id
        evidence.verified_at = utcnow()

        queue_event(db, EventType.EVIDENCE_VERIFIED, evidence.room_id, {
            "file_id": str(evidence.id),
            "transaction_id": str(evidence.transaction_id),
            "file_type": route.file_type.value,
        })
        logger.info(f"Evidence {file_id} verified by GM {arbiter.id}")
        return evidence

    @staticmethod
    @transactional
    def reject(
        db: Session,
        file_id: UUID,
        arbiter_id: UUID,
        reason: str,
        expected_type: Optional[EvidenceType] = None
    ) -> EvidenceFile:
        """
        GM 駁回檔案（必須附上原因）

        上傳者可以重新上傳；被駁回的檔案本身不會再被審核

        異常：
            NotArbiter / EvidenceNotFound / WrongType / AlreadyProcessed: 同 approve()
            MissingReason: 沒有填原因
        """
        arbiter = require_active_arbiter(db, arbiter_id)
        evidence = EvidenceVerificationGateway._load_for_review(db, file_id, expected_type)
        route = EVIDENCE_ROUTES[EvidenceType(evidence.file_type)]

        if reason is None or not reason.strip():
            raise MissingReason()
        reason = reason.strip()

        if route.on_reject:
            route.on_reject(db, evidence.transaction_id, arbiter, reason)
        else:
            AuditSink.record(
                db, evidence.room_id, route.rejected_action,
                arbiter.name, ActorRole.GM,
                f"{route.file_type.value.replace('_', ' ').capitalize()} rejected: {reason}"
            )

        evidence.status = EvidenceStatus.REJECTED
        evidence.verified_by = arbiter.id
        evidence.verified_at = utcnow()
        evidence.rejection_reason = reason

        queue_event(db, EventType.EVIDENCE_REJECTED, evidence.room_id, {
            "file_id": str(evidence.id),
            "transaction_id": str(evidence.transaction_id),
            "file_type": route.file_type.value,
            "reason": reason,
        })
        logger.info(f"Evidence {file_id} rejected by GM {arbiter.id}: {reason}")
        return evidence

    @staticmethod
    def pending_files(db: Session, room_id: Optional[UUID] = None) -> List[EvidenceFile]:
        """等待 GM 審核的檔案，最早上傳的排前面"""
        query = db.query(EvidenceFile).filter(EvidenceFile.status == EvidenceStatus.PENDING)
        if room_id is not None:
            query = query.filter(EvidenceFile.room_id == room_id)
        return query.order_by(EvidenceFile.created_at).all()

    @staticmethod
    def files_for_transaction(db: Session, transaction_id: UUID) -> List[EvidenceFile]:
        return db.query(EvidenceFile).filter(
            EvidenceFile.transaction_id == transaction_id
        ).order_by(EvidenceFile.created_at).all()

    @staticmethod
    def get_file(db: Session, file_id: UUID) -> EvidenceFile:
        evidence = db.query(EvidenceFile).filter(EvidenceFile.id == file_id).first()
        if not evidence:
            raise EvidenceNotFound(file_id)
        return evidence
