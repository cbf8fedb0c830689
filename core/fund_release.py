"""
Fund Release Authority：GM 放款

放款是整個流程裡唯一會讓錢離開託管的動作，所以：
- 只接受啟用中的 GM
- 每一次嘗試（成功或失敗）都會留下 log，成功的會寫稽核
- 真正的狀態檢查與重複放款保護在 TransactionStateMachine.release_funds（交易列鎖）
- FundsReleased 事件只在 commit 之後才發出
"""
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Optional
import logging

from models import Transaction
from core.events import queue_event, EventType
from core.exceptions import EscrowException
from core.state_machine import TransactionStateMachine
from services.arbiter_service import require_active_arbiter
from database import transactional

logger = logging.getLogger(__name__)


class FundReleaseAuthority:
    """放款授權"""

    @staticmethod
    @transactional
    def release(
        db: Session,
        transaction_id: UUID,
        arbiter_id: UUID,
        notes: Optional[str] = None
    ) -> Transaction:
        """
        放款並完成交易

        流程：
        1. 確認呼叫者是啟用中的 GM
        2. 交給狀態機：goods_received / delivered -> completed
        3. 排入 FundsReleased 事件（commit 後發出）

        參數：
            db: SQLAlchemy Session
            transaction_id: Transaction UUID
            arbiter_id: GM UUID
            notes: 放款備註（選填）

        返回：
            Transaction（status=completed）

        異常：
            NotArbiter: 呼叫者不是啟用中的 GM
            TransactionNotFound: 交易不存在
            NotReadyForRelease: 狀態不是 goods_received / delivered（包含已經放款過）
        """
        try:
            arbiter = require_active_arbiter(db, arbiter_id)
        except EscrowException as e:
            logger.warning(f"Fund release for transaction {transaction_id} refused: {e.reason}")
            raise

        logger.info(f"GM {arbiter.id} ({arbiter.name}) requested fund release for transaction {transaction_id}")

        try:
            transaction = TransactionStateMachine.release_funds(db, transaction_id, arbiter, notes)
        except EscrowException as e:
            logger.warning(
                f"Fund release for transaction {transaction_id} by GM {arbiter.id} refused: {e.kind}: {e.reason}"
            )
            raise

        queue_event(db, EventType.FUNDS_RELEASED, transaction.room_id, {
            "transaction_id": str(transaction.id),
            "transaction_number": transaction.transaction_number,
            "amount": str(transaction.total_amount),
            "currency": transaction.currency,
            "released_by": str(arbiter.id),
        })

        logger.info(
            f"Funds released for transaction {transaction.id} ({transaction.transaction_number}) "
            f"by GM {arbiter.id}: {transaction.currency} {transaction.total_amount}"
        )
        return transaction
