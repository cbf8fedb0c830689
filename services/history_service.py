"""
Room history service.

Builds the room activity timeline and the transaction summary so the
frontend can render the authoritative record directly from the server.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from models import (
    EvidenceFile,
    EvidenceStatus,
    EvidenceType,
    Role,
    Room,
    RoomOccupant,
    Transaction,
    TransactionStatus,
)
from services import progress_service
from services.audit_service import AuditSink
from services.fee_service import format_amount


def get_room_timeline(room_id: UUID, db: Session, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Return the room's audit entries in sequence order (oldest first).

    With a limit only the most recent entries are returned, still oldest first.
    """
    entries = AuditSink.entries_for_room(db, room_id, limit=limit)
    return [
        {
            "sequence": entry.sequence,
            "action": entry.action,
            "actor_name": entry.actor_name,
            "actor_role": entry.actor_role.value,
            "description": entry.description,
            "created_at": entry.created_at,
        }
        for entry in entries
    ]


def _latest_file(files: List[EvidenceFile], file_type: EvidenceType) -> Optional[EvidenceFile]:
    matching = [f for f in files if f.file_type == file_type]
    return matching[-1] if matching else None


def _file_entry(evidence: Optional[EvidenceFile]) -> Optional[Dict[str, Any]]:
    if evidence is None:
        return None
    return {
        "file_id": evidence.id,
        "file_name": evidence.file_name,
        "status": EvidenceStatus(evidence.status).value,
        "rejection_reason": evidence.rejection_reason,
        "uploaded_at": evidence.created_at,
    }


def build_transaction_summary(transaction: Transaction, db: Session) -> Dict[str, Any]:
    """
    Summarize a transaction for display: amounts, parties, progress and
    the latest file of each evidence type, followed by the room timeline.
    """
    status = TransactionStatus(transaction.status)
    room = db.query(Room).filter(Room.id == transaction.room_id).first()

    parties: Dict[str, Optional[str]] = {Role.BUYER.value: None, Role.SELLER.value: None}
    for role, occupant_id in ((Role.BUYER, transaction.buyer_id), (Role.SELLER, transaction.seller_id)):
        if occupant_id is None:
            continue
        occupant = db.query(RoomOccupant).filter(RoomOccupant.id == occupant_id).first()
        if occupant:
            parties[role.value] = occupant.name

    files = (
        db.query(EvidenceFile)
        .filter(EvidenceFile.transaction_id == transaction.id)
        .order_by(EvidenceFile.created_at)
        .all()
    )

    return {
        "transaction_id": transaction.id,
        "transaction_number": transaction.transaction_number,
        "room_number": room.room_number if room else None,
        "status": status.value,
        "progress": progress_service.progress_percentage(status),
        "current_action": progress_service.current_action(status),
        "buyer_name": parties[Role.BUYER.value],
        "seller_name": parties[Role.SELLER.value],
        "amount": format_amount(transaction.amount, transaction.currency),
        "commission": format_amount(transaction.commission, transaction.currency),
        "fee": format_amount(transaction.fee, transaction.currency),
        "total": format_amount(transaction.total_amount, transaction.currency),
        "payment_proof": _file_entry(_latest_file(files, EvidenceType.PAYMENT_PROOF)),
        "shipping_receipt": _file_entry(_latest_file(files, EvidenceType.SHIPPING_RECEIPT)),
        "payment_rejection_reason": transaction.payment_rejection_reason,
        "shipping_rejection_reason": transaction.shipping_rejection_reason,
        "created_at": transaction.created_at,
        "completed_at": transaction.completed_at,
        "timeline": get_room_timeline(transaction.room_id, db),
    }
