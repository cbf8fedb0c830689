"""Tests for slot assignment: exclusivity, ordering, multi-room rule, leave, sessions."""

import threading

import pytest

import core.occupancy_manager as occupancy_module
from core.events import EventType
from core.exceptions import (
    AlreadyOccupyingAnotherRoom,
    DuplicateRole,
    OccupantNotFound,
    ParticipantLocked,
    RoleUnavailable,
    RoomExpired,
    RoomNotFound,
)
from core.occupancy_manager import ParticipantInfo, RoomOccupancyManager
from core.room_manager import RoomManager
from core.state_machine import TransactionStateMachine
from models import AuditEntry, Role, RoomOccupant, RoomStatus, TransactionStatus


def _info(name: str, identifier=None) -> ParticipantInfo:
    return ParticipantInfo(name=name, contact="0812000000", identifier=identifier)


# =====================================================================
# Join
# =====================================================================


class TestJoin:
    def test_buyer_join_marks_room_in_use(self, db, room) -> None:
        assert room.status == RoomStatus.FREE
        occupant = RoomOccupancyManager.join(db, room.id, Role.BUYER, _info("Budi"))

        db.refresh(room)
        assert room.status == RoomStatus.IN_USE
        assert occupant.role == Role.BUYER
        assert occupant.session_token
        assert occupant.is_online is True

    def test_seller_cannot_join_before_buyer(self, db, room) -> None:
        with pytest.raises(RoleUnavailable):
            RoomOccupancyManager.join(db, room.id, Role.SELLER, _info("Sari"))
        assert db.query(RoomOccupant).count() == 0

    def test_seller_joins_after_buyer(self, db, room, buyer) -> None:
        seller = RoomOccupancyManager.join(db, room.id, Role.SELLER, _info("Sari"))
        assert seller.role == Role.SELLER
        assert RoomManager.get_occupant_count(db, room.id) == 2

    def test_second_buyer_rejected(self, db, room, buyer) -> None:
        with pytest.raises(RoleUnavailable):
            RoomOccupancyManager.join(db, room.id, Role.BUYER, _info("Another"))

    def test_second_seller_rejected(self, db, room, seller) -> None:
        with pytest.raises(RoleUnavailable):
            RoomOccupancyManager.join(db, room.id, Role.SELLER, _info("Another"))

    def test_unknown_room(self, db) -> None:
        import uuid
        with pytest.raises(RoomNotFound):
            RoomOccupancyManager.join(db, uuid.uuid4(), Role.BUYER, _info("Budi"))

    def test_expired_room_rejects_join(self, db) -> None:
        room = RoomManager.create_room(db, ttl_days=0)
        with pytest.raises(RoomExpired):
            RoomOccupancyManager.join(db, room.id, Role.BUYER, _info("Budi"))
        assert RoomOccupancyManager.is_available(db, room.id, Role.BUYER) is False

    def test_same_participant_cannot_take_both_roles(self, db, room) -> None:
        RoomOccupancyManager.join(db, room.id, Role.BUYER, _info("Budi", "id-budi"))
        with pytest.raises(DuplicateRole):
            RoomOccupancyManager.join(db, room.id, Role.SELLER, _info("Budi again", "id-budi"))

    def test_participant_active_elsewhere_rejected(self, db, room) -> None:
        RoomOccupancyManager.join(db, room.id, Role.BUYER, _info("Budi", "id-budi"))
        other = RoomManager.create_room(db)
        with pytest.raises(AlreadyOccupyingAnotherRoom):
            RoomOccupancyManager.join(db, other.id, Role.BUYER, _info("Budi", "id-budi"))

    def test_participant_free_once_previous_transaction_finished(self, db, room, buyer, arbiter) -> None:
        transaction = TransactionStateMachine.open_transaction(db, room.id)
        TransactionStateMachine.cancel(db, transaction.id, arbiter, "Buyer changed their mind")

        other = RoomManager.create_room(db)
        occupant = RoomOccupancyManager.join(db, other.id, Role.BUYER, _info("Budi", "buyer-budi"))
        assert occupant.room_id == other.id

    def test_seller_attached_to_active_transaction(self, db, room, buyer) -> None:
        transaction = TransactionStateMachine.open_transaction(db, room.id)
        assert transaction.seller_id is None

        seller = RoomOccupancyManager.join(db, room.id, Role.SELLER, _info("Sari"))
        db.refresh(transaction)
        assert transaction.seller_id == seller.id
        assert transaction.buyer_id == buyer.id

    def test_join_writes_audit_and_event(self, db, room, events) -> None:
        RoomOccupancyManager.join(db, room.id, Role.BUYER, _info("Budi"))

        entries = db.query(AuditEntry).filter(AuditEntry.room_id == room.id).order_by(AuditEntry.sequence).all()
        assert [e.action for e in entries] == ["room_created", "joined_room"]
        assert [e.event_type for e in events] == [EventType.SLOT_ASSIGNED]
        assert events[0].payload["role"] == "buyer"

    def test_failed_join_has_no_side_effects(self, db, room, buyer, events) -> None:
        before = db.query(AuditEntry).count()
        with pytest.raises(RoleUnavailable):
            RoomOccupancyManager.join(db, room.id, Role.BUYER, _info("Late"))
        assert db.query(AuditEntry).count() == before
        assert events == []


# =====================================================================
# Concurrency
# =====================================================================


class TestConcurrentJoin:
    def _race(self, session_factory, room_id, role, contenders):
        barrier = threading.Barrier(contenders)
        outcomes, errors = [], []
        lock = threading.Lock()

        def attempt(i):
            session = session_factory()
            try:
                barrier.wait()
                RoomOccupancyManager.join(session, room_id, role, _info(f"Contender {i}"))
                result = "won"
            except RoleUnavailable:
                result = "unavailable"
            except Exception as e:  # surfaced by the assertion below
                with lock:
                    errors.append(e)
                return
            finally:
                session.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(contenders)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        return outcomes, errors

    def test_exactly_one_buyer_wins(self, db, session_factory, room) -> None:
        room_id = room.id
        db.close()

        outcomes, errors = self._race(session_factory, room_id, Role.BUYER, 8)

        assert errors == []
        assert outcomes.count("won") == 1
        assert outcomes.count("unavailable") == 7
        assert db.query(RoomOccupant).filter(RoomOccupant.room_id == room_id).count() == 1

    def test_exactly_one_seller_wins(self, db, session_factory, room, buyer) -> None:
        room_id = room.id
        db.close()

        outcomes, errors = self._race(session_factory, room_id, Role.SELLER, 6)

        assert errors == []
        assert outcomes.count("won") == 1
        assert outcomes.count("unavailable") == 5
        roles = [o.role for o in db.query(RoomOccupant).filter(RoomOccupant.room_id == room_id).all()]
        assert sorted(r.value for r in roles) == ["buyer", "seller"]

    def test_lost_race_is_caught_by_constraint_and_retried(self, db, room, buyer, monkeypatch) -> None:
        # Blind the application-level check so only the (room, role) constraint stands in the way.
        attempts = []

        def always_available(role, occupants):
            attempts.append(role)
            return None

        monkeypatch.setattr(occupancy_module, "_role_unavailable_reason", always_available)

        with pytest.raises(RoleUnavailable):
            RoomOccupancyManager.join(db, room.id, Role.BUYER, _info("Intruder"))

        assert len(attempts) == 2  # first try plus one retry
        assert db.query(RoomOccupant).filter(RoomOccupant.room_id == room.id).count() == 1


# =====================================================================
# Leave / availability / sessions
# =====================================================================


class TestLeave:
    def test_last_leave_frees_room(self, db, room, buyer, events) -> None:
        RoomOccupancyManager.leave(db, room.id, buyer.id)

        db.refresh(room)
        assert room.status == RoomStatus.FREE
        assert RoomManager.get_occupant_count(db, room.id) == 0
        assert events[-1].event_type == EventType.SLOT_RELEASED

    def test_room_stays_in_use_while_someone_remains(self, db, room, buyer, seller) -> None:
        RoomOccupancyManager.leave(db, room.id, seller.id)
        db.refresh(room)
        assert room.status == RoomStatus.IN_USE
        assert RoomOccupancyManager.is_available(db, room.id, Role.SELLER) is True

    def test_party_to_active_transaction_cannot_leave(self, db, room, buyer) -> None:
        TransactionStateMachine.open_transaction(db, room.id)
        with pytest.raises(ParticipantLocked):
            RoomOccupancyManager.leave(db, room.id, buyer.id)

    def test_leave_allowed_once_transaction_completed(self, db, room, buyer, seller, drive) -> None:
        drive(TransactionStatus.COMPLETED)
        RoomOccupancyManager.leave(db, room.id, seller.id)
        RoomOccupancyManager.leave(db, room.id, buyer.id)
        db.refresh(room)
        assert room.status == RoomStatus.FREE

    def test_unknown_occupant(self, db, room) -> None:
        import uuid
        with pytest.raises(OccupantNotFound):
            RoomOccupancyManager.leave(db, room.id, uuid.uuid4())


class TestAvailabilityAndSessions:
    def test_is_available_tracks_slots(self, db, room) -> None:
        assert RoomOccupancyManager.is_available(db, room.id, Role.BUYER) is True
        assert RoomOccupancyManager.is_available(db, room.id, Role.SELLER) is False

        RoomOccupancyManager.join(db, room.id, Role.BUYER, _info("Budi"))
        assert RoomOccupancyManager.is_available(db, room.id, Role.BUYER) is False
        assert RoomOccupancyManager.is_available(db, room.id, Role.SELLER) is True

    def test_authenticate_by_token(self, db, room, buyer) -> None:
        occupant = RoomOccupancyManager.authenticate(db, room.id, buyer.session_token)
        assert occupant.id == buyer.id

        with pytest.raises(OccupantNotFound):
            RoomOccupancyManager.authenticate(db, room.id, "not-a-token")
        with pytest.raises(OccupantNotFound):
            RoomOccupancyManager.authenticate(db, room.id, None)

    def test_offline_and_touch(self, db, room, buyer) -> None:
        RoomOccupancyManager.mark_offline(db, buyer.id)
        db.refresh(buyer)
        assert buyer.is_online is False

        RoomOccupancyManager.touch(db, buyer.id)
        db.refresh(buyer)
        assert buyer.is_online is True
