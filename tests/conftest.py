"""Shared fixtures: a fresh SQLite database per test plus the usual room cast."""

import pytest
from sqlalchemy.orm import sessionmaker

import models  # noqa: F401  (registers the tables on Base.metadata)
from database import Base, create_db_engine
from models import EvidenceType, Role, TransactionStatus
from core.events import broadcaster
from core.room_manager import RoomManager
from core.occupancy_manager import RoomOccupancyManager, ParticipantInfo
from core.state_machine import TransactionStateMachine
from core.evidence_gateway import EvidenceVerificationGateway
from core.fund_release import FundReleaseAuthority
from services.arbiter_service import create_arbiter
from services.evidence_store import EvidenceBlob, InMemoryEvidenceStore


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'escrow.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def arbiter(db):
    gm = create_arbiter(db, "GM Rina", "rina@example.com")
    db.commit()
    return gm


@pytest.fixture
def store():
    return InMemoryEvidenceStore()


@pytest.fixture
def blob():
    return EvidenceBlob(data=b"%PDF-1.4 escrow proof", file_name="proof.pdf", mime_type="application/pdf")


@pytest.fixture
def room(db):
    return RoomManager.create_room(db)


@pytest.fixture
def buyer(db, room):
    return RoomOccupancyManager.join(
        db, room.id, Role.BUYER, ParticipantInfo("Budi", "081200000001", "buyer-budi")
    )


@pytest.fixture
def seller(db, room, buyer):
    return RoomOccupancyManager.join(
        db, room.id, Role.SELLER, ParticipantInfo("Sari", "081200000002", "seller-sari")
    )


@pytest.fixture
def events():
    received = []
    handler = received.append
    broadcaster.subscribe(handler)
    yield received
    broadcaster.unsubscribe(handler)


@pytest.fixture
def drive(db, room, buyer, seller, arbiter, store, blob):
    """Walk the room's transaction along the happy path up to `target`; returns the transaction id."""

    def _drive(target: TransactionStatus):
        payment = EvidenceVerificationGateway.submit(
            db, room.id, buyer.id, EvidenceType.PAYMENT_PROOF, blob, store
        )
        transaction_id = payment.transaction_id
        if target == TransactionStatus.AWAITING_PAYMENT_VERIFICATION:
            return transaction_id

        EvidenceVerificationGateway.approve(db, payment.id, arbiter.id)
        if target == TransactionStatus.PAID:
            return transaction_id

        receipt = EvidenceVerificationGateway.submit(
            db, room.id, seller.id, EvidenceType.SHIPPING_RECEIPT, blob, store
        )
        if target == TransactionStatus.AWAITING_SHIPPING_VERIFICATION:
            return transaction_id

        EvidenceVerificationGateway.approve(db, receipt.id, arbiter.id)
        if target == TransactionStatus.SHIPPED:
            return transaction_id

        TransactionStateMachine.confirm_receipt(db, transaction_id, buyer.id)
        if target == TransactionStatus.GOODS_RECEIVED:
            return transaction_id

        FundReleaseAuthority.release(db, transaction_id, arbiter.id)
        return transaction_id

    return _drive
