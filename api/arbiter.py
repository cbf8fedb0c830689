"""
GM (Arbiter) API Endpoints

職責：
1. 審核證明檔案（核准 / 駁回）
2. 放款
3. 取消交易、標記爭議、追加備註
4. 待審核檔案列表

所有 endpoint 都需要 X-Arbiter-Id header
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID
import logging

from database import get_db
from models import Arbiter, EvidenceType
from schemas import (
    EvidenceFileResponse,
    ReasonRequest,
    NotesRequest,
    TransactionResponse,
)
from core.evidence_gateway import EvidenceVerificationGateway
from core.fund_release import FundReleaseAuthority
from core.state_machine import TransactionStateMachine
from core.exceptions import EscrowException
from api.deps import get_current_arbiter
from api.errors import ERROR_RESPONSES, to_http_exception
from api.transactions import transaction_response

router = APIRouter(prefix="/api/gm", tags=["gm"], responses=ERROR_RESPONSES)
logger = logging.getLogger(__name__)


# ============ 證明檔案審核 ============

@router.get("/evidence/pending", response_model=List[EvidenceFileResponse])
def list_pending_evidence(
    room_id: Optional[UUID] = Query(None),
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    """等待審核的檔案（最早上傳的排前面）"""
    try:
        files = EvidenceVerificationGateway.pending_files(db, room_id)
        return [EvidenceFileResponse.model_validate(f) for f in files]
    except Exception as e:
        logger.error(f"Failed to list pending evidence: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


def _approve(db: Session, file_id: UUID, arbiter: Arbiter, expected_type: Optional[EvidenceType]):
    try:
        evidence = EvidenceVerificationGateway.approve(db, file_id, arbiter.id, expected_type)
        return EvidenceFileResponse.model_validate(evidence)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to approve evidence {file_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


def _reject(db: Session, file_id: UUID, arbiter: Arbiter, reason: str, expected_type: Optional[EvidenceType]):
    try:
        evidence = EvidenceVerificationGateway.reject(db, file_id, arbiter.id, reason, expected_type)
        return EvidenceFileResponse.model_validate(evidence)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to reject evidence {file_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/evidence/{file_id}/approve", response_model=EvidenceFileResponse)
def approve_evidence(
    file_id: UUID,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    """核准任何種類的檔案（依種類推進交易狀態）"""
    return _approve(db, file_id, arbiter, None)


@router.post("/evidence/{file_id}/reject", response_model=EvidenceFileResponse)
def reject_evidence(
    file_id: UUID,
    body: ReasonRequest,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    return _reject(db, file_id, arbiter, body.reason, None)


@router.post("/payment-proofs/{file_id}/approve", response_model=EvidenceFileResponse)
def approve_payment_proof(
    file_id: UUID,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    """核准付款證明（檔案不是付款證明時回傳 WrongType）"""
    return _approve(db, file_id, arbiter, EvidenceType.PAYMENT_PROOF)


@router.post("/payment-proofs/{file_id}/reject", response_model=EvidenceFileResponse)
def reject_payment_proof(
    file_id: UUID,
    body: ReasonRequest,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    return _reject(db, file_id, arbiter, body.reason, EvidenceType.PAYMENT_PROOF)


@router.post("/shipping-receipts/{file_id}/approve", response_model=EvidenceFileResponse)
def approve_shipping_receipt(
    file_id: UUID,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    return _approve(db, file_id, arbiter, EvidenceType.SHIPPING_RECEIPT)


@router.post("/shipping-receipts/{file_id}/reject", response_model=EvidenceFileResponse)
def reject_shipping_receipt(
    file_id: UUID,
    body: ReasonRequest,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    return _reject(db, file_id, arbiter, body.reason, EvidenceType.SHIPPING_RECEIPT)


# ============ 交易管理 ============

@router.post("/transactions/{transaction_id}/release", response_model=TransactionResponse)
def release_funds(
    transaction_id: UUID,
    body: NotesRequest,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    """
    放款並完成交易

    重複呼叫時第二次會回傳 409 NotReadyForRelease
    """
    try:
        transaction = FundReleaseAuthority.release(db, transaction_id, arbiter.id, body.notes)
        logger.info(f"Funds released via API for transaction {transaction.transaction_number} by GM {arbiter.id}")
        return transaction_response(transaction)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to release funds for transaction {transaction_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/transactions/{transaction_id}/cancel", response_model=TransactionResponse)
def cancel_transaction(
    transaction_id: UUID,
    body: ReasonRequest,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    try:
        transaction = TransactionStateMachine.cancel(db, transaction_id, arbiter, body.reason)
        logger.info(f"Transaction {transaction.transaction_number} cancelled via API by GM {arbiter.id}")
        return transaction_response(transaction)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to cancel transaction {transaction_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/transactions/{transaction_id}/dispute", response_model=TransactionResponse)
def dispute_transaction(
    transaction_id: UUID,
    body: ReasonRequest,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    try:
        transaction = TransactionStateMachine.dispute(db, transaction_id, arbiter, body.reason)
        return transaction_response(transaction)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to dispute transaction {transaction_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/transactions/{transaction_id}/notes", response_model=TransactionResponse)
def update_notes(
    transaction_id: UUID,
    body: NotesRequest,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    try:
        transaction = TransactionStateMachine.update_notes(db, transaction_id, arbiter, body.notes)
        return transaction_response(transaction)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to update notes for transaction {transaction_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")
