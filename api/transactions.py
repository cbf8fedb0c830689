"""
Transaction API Endpoints

職責：
1. 查詢房間目前的交易、交易摘要
2. buyer / seller 上傳證明檔案
3. buyer 確認收貨

所有業務邏輯集中在 TransactionStateMachine / EvidenceVerificationGateway
"""
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID
import logging

from database import get_db
from models import Arbiter, EvidenceType, Transaction
from schemas import (
    TransactionOpen,
    TransactionResponse,
    ConfirmReceipt,
    EvidenceFileResponse,
)
from core.room_manager import RoomManager
from core.occupancy_manager import RoomOccupancyManager
from core.state_machine import TransactionStateMachine
from core.evidence_gateway import EvidenceVerificationGateway
from core.exceptions import EscrowException, TransactionNotFound
from services.evidence_store import EvidenceBlob, EvidenceStore
from services.history_service import build_transaction_summary
from api.deps import get_current_arbiter, get_evidence_store, get_session_token
from api.errors import ERROR_RESPONSES, to_http_exception

router = APIRouter(prefix="/api", tags=["transactions"], responses=ERROR_RESPONSES)
logger = logging.getLogger(__name__)


def transaction_response(transaction: Transaction) -> TransactionResponse:
    response = TransactionResponse.model_validate(transaction)
    response.progress = TransactionStateMachine.progress_percentage(transaction)
    response.current_action = TransactionStateMachine.current_action(transaction)
    return response


@router.get("/rooms/{room_number}/transaction", response_model=TransactionResponse)
def get_room_transaction(room_number: str, db: Session = Depends(get_db)):
    """房間目前的交易；沒有進行中的交易時回傳最新一筆"""
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        transaction = TransactionStateMachine.get_latest_transaction(db, room.id)
        if not transaction:
            raise TransactionNotFound(f"for room {room_number}")
        return transaction_response(transaction)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get room transaction: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/rooms/{room_number}/transaction", response_model=TransactionResponse)
def open_transaction(
    room_number: str,
    terms: TransactionOpen,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    """GM 以指定金額開立交易"""
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        transaction = TransactionStateMachine.open_transaction(
            db,
            room.id,
            amount=terms.amount,
            currency=terms.currency,
            commission=terms.commission,
            fee=terms.fee
        )
        logger.info(f"GM {arbiter.id} opened transaction {transaction.transaction_number} in room {room_number}")
        return transaction_response(transaction)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to open transaction in room {room_number}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/rooms/{room_number}/evidence", response_model=EvidenceFileResponse)
def upload_evidence(
    room_number: str,
    file_type: EvidenceType = Form(...),
    file: UploadFile = File(...),
    session_token: Optional[str] = Depends(get_session_token),
    store: EvidenceStore = Depends(get_evidence_store),
    db: Session = Depends(get_db)
):
    """
    上傳證明檔案（buyer / seller endpoint）

    流程：
    1. 用 X-Session-Token 找到上傳者
    2. EvidenceVerificationGateway.submit（檢查檔案、推進交易狀態）
    3. 返回 pending 的 EvidenceFile
    """
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        occupant = RoomOccupancyManager.authenticate(db, room.id, session_token)

        blob = EvidenceBlob(
            data=file.file.read(),
            file_name=file.filename or "upload",
            mime_type=file.content_type or "application/octet-stream"
        )
        evidence = EvidenceVerificationGateway.submit(
            db, room.id, occupant.id, file_type, blob, store
        )
        return EvidenceFileResponse.model_validate(evidence)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to upload evidence in room {room_number}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/transactions/{transaction_id}/evidence", response_model=List[EvidenceFileResponse])
def list_evidence(transaction_id: UUID, db: Session = Depends(get_db)):
    try:
        TransactionStateMachine.get_transaction(db, transaction_id)
        files = EvidenceVerificationGateway.files_for_transaction(db, transaction_id)
        return [EvidenceFileResponse.model_validate(f) for f in files]
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to list evidence: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/transactions/{transaction_id}/confirm-receipt", response_model=TransactionResponse)
def confirm_receipt(
    transaction_id: UUID,
    receipt: ConfirmReceipt,
    session_token: Optional[str] = Depends(get_session_token),
    db: Session = Depends(get_db)
):
    """buyer 確認收貨（shipped -> goods_received）"""
    try:
        transaction = TransactionStateMachine.get_transaction(db, transaction_id)
        occupant = RoomOccupancyManager.authenticate(db, transaction.room_id, session_token)
        transaction = TransactionStateMachine.confirm_receipt(
            db, transaction_id, occupant.id, receipt.notes
        )
        return transaction_response(transaction)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to confirm receipt for transaction {transaction_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/transactions/{transaction_id}/summary")
def get_summary(transaction_id: UUID, db: Session = Depends(get_db)):
    """交易摘要：金額、雙方、進度、最新檔案、房間活動紀錄"""
    try:
        transaction = TransactionStateMachine.get_transaction(db, transaction_id)
        return build_transaction_summary(transaction, db)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get summary: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")
