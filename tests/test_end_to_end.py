"""The complete escrow scenario, step by step, against the core components."""

import pytest

from core.events import EventType
from core.evidence_gateway import EvidenceVerificationGateway
from core.exceptions import NotReadyForRelease
from core.fund_release import FundReleaseAuthority
from core.occupancy_manager import ParticipantInfo, RoomOccupancyManager
from core.room_manager import RoomManager
from core.state_machine import TransactionStateMachine
from models import EvidenceStatus, EvidenceType, Role, RoomStatus, TransactionStatus

S = TransactionStatus


def test_escrow_happy_path(db, arbiter, store, blob, events) -> None:
    room = RoomManager.create_room(db, arbiter=arbiter)
    assert room.status == RoomStatus.FREE

    buyer = RoomOccupancyManager.join(db, room.id, Role.BUYER, ParticipantInfo("Budi", "0811", "budi"))
    db.refresh(room)
    assert room.status == RoomStatus.IN_USE
    assert RoomOccupancyManager.get_occupant(db, room.id, Role.BUYER).id == buyer.id

    seller = RoomOccupancyManager.join(db, room.id, Role.SELLER, ParticipantInfo("Sari", "0822", "sari"))
    assert RoomOccupancyManager.get_occupant(db, room.id, Role.SELLER).id == seller.id

    p1 = EvidenceVerificationGateway.submit(db, room.id, buyer.id, EvidenceType.PAYMENT_PROOF, blob, store)
    transaction = TransactionStateMachine.get_transaction(db, p1.transaction_id)
    assert transaction.status == S.AWAITING_PAYMENT_VERIFICATION
    assert p1.status == EvidenceStatus.PENDING

    p1 = EvidenceVerificationGateway.approve(db, p1.id, arbiter.id, EvidenceType.PAYMENT_PROOF)
    assert p1.status == EvidenceStatus.VERIFIED
    db.refresh(transaction)
    assert transaction.status == S.PAID

    p2 = EvidenceVerificationGateway.submit(db, room.id, seller.id, EvidenceType.SHIPPING_RECEIPT, blob, store)
    db.refresh(transaction)
    assert transaction.status == S.AWAITING_SHIPPING_VERIFICATION

    EvidenceVerificationGateway.approve(db, p2.id, arbiter.id, EvidenceType.SHIPPING_RECEIPT)
    db.refresh(transaction)
    assert transaction.status == S.SHIPPED

    TransactionStateMachine.confirm_receipt(db, transaction.id, buyer.id)
    db.refresh(transaction)
    assert transaction.status == S.GOODS_RECEIVED

    FundReleaseAuthority.release(db, transaction.id, arbiter.id)
    db.refresh(transaction)
    assert transaction.status == S.COMPLETED
    assert transaction.funds_released_at is not None

    with pytest.raises(NotReadyForRelease):
        FundReleaseAuthority.release(db, transaction.id, arbiter.id)

    # Completion leaves the room to its occupants.
    db.refresh(room)
    assert room.status == RoomStatus.IN_USE

    assert [e.event_type for e in events] == [
        EventType.SLOT_ASSIGNED,
        EventType.SLOT_ASSIGNED,
        EventType.TRANSACTION_UPDATED,
        EventType.EVIDENCE_SUBMITTED,
        EventType.TRANSACTION_UPDATED,
        EventType.EVIDENCE_VERIFIED,
        EventType.TRANSACTION_UPDATED,
        EventType.EVIDENCE_SUBMITTED,
        EventType.TRANSACTION_UPDATED,
        EventType.EVIDENCE_VERIFIED,
        EventType.TRANSACTION_UPDATED,
        EventType.TRANSACTION_UPDATED,
        EventType.FUNDS_RELEASED,
    ]
