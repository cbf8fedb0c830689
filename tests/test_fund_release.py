"""Tests for the fund release gate: authorization, eligibility, double release."""

import threading

import pytest

from core.events import EventType
from core.exceptions import NotArbiter, NotReadyForRelease, TransactionNotFound
from core.fund_release import FundReleaseAuthority
from core.state_machine import TransactionStateMachine
from models import Arbiter, AuditEntry, Transaction, TransactionStatus

S = TransactionStatus


class TestRelease:
    def test_release_completes_transaction(self, db, arbiter, drive, events) -> None:
        transaction_id = drive(S.GOODS_RECEIVED)
        transaction = FundReleaseAuthority.release(db, transaction_id, arbiter.id, notes="All good")

        assert transaction.status == S.COMPLETED
        assert transaction.funds_released_by == arbiter.id
        assert transaction.funds_released_at is not None
        assert transaction.completed_at is not None
        assert "[Fund Release] All good" in transaction.gm_notes
        assert [e.event_type for e in events].count(EventType.FUNDS_RELEASED) == 1

    def test_second_release_fails(self, db, arbiter, drive, events) -> None:
        transaction_id = drive(S.GOODS_RECEIVED)
        first = FundReleaseAuthority.release(db, transaction_id, arbiter.id)
        released_at = first.funds_released_at

        with pytest.raises(NotReadyForRelease):
            FundReleaseAuthority.release(db, transaction_id, arbiter.id)

        transaction = TransactionStateMachine.get_transaction(db, transaction_id)
        assert transaction.status == S.COMPLETED
        assert transaction.funds_released_at == released_at
        assert db.query(AuditEntry).filter(AuditEntry.action == "funds_released").count() == 1
        assert [e.event_type for e in events].count(EventType.FUNDS_RELEASED) == 1

    @pytest.mark.parametrize("status", [
        S.PENDING_PAYMENT,
        S.AWAITING_PAYMENT_VERIFICATION,
        S.PAID,
        S.AWAITING_SHIPPING_VERIFICATION,
        S.SHIPPED,
    ])
    def test_release_before_receipt_fails(self, db, arbiter, drive, room, status) -> None:
        if status == S.PENDING_PAYMENT:
            transaction_id = TransactionStateMachine.open_transaction(db, room.id).id
        else:
            transaction_id = drive(status)

        with pytest.raises(NotReadyForRelease):
            FundReleaseAuthority.release(db, transaction_id, arbiter.id)

    def test_delivered_alias_is_releasable(self, db, arbiter, drive) -> None:
        transaction_id = drive(S.GOODS_RECEIVED)
        transaction = db.query(Transaction).filter(Transaction.id == transaction_id).one()
        transaction.status = S.DELIVERED
        db.commit()

        released = FundReleaseAuthority.release(db, transaction_id, arbiter.id)
        assert released.status == S.COMPLETED

    def test_inactive_arbiter_rejected(self, db, arbiter, drive) -> None:
        transaction_id = drive(S.GOODS_RECEIVED)
        retired = Arbiter(name="Old GM", email="old@example.com", is_active=False)
        db.add(retired)
        db.commit()

        with pytest.raises(NotArbiter):
            FundReleaseAuthority.release(db, transaction_id, retired.id)
        with pytest.raises(NotArbiter):
            FundReleaseAuthority.release(db, transaction_id, None)

        assert TransactionStateMachine.get_transaction(db, transaction_id).status == S.GOODS_RECEIVED

    def test_unknown_transaction(self, db, arbiter) -> None:
        import uuid
        with pytest.raises(TransactionNotFound):
            FundReleaseAuthority.release(db, uuid.uuid4(), arbiter.id)


class TestConcurrentRelease:
    def test_only_one_of_two_concurrent_releases_wins(self, db, session_factory, arbiter, drive) -> None:
        transaction_id = drive(S.GOODS_RECEIVED)
        arbiter_id = arbiter.id
        db.close()

        barrier = threading.Barrier(2)
        outcomes, errors = [], []
        lock = threading.Lock()

        def attempt():
            session = session_factory()
            try:
                barrier.wait()
                FundReleaseAuthority.release(session, transaction_id, arbiter_id)
                result = "released"
            except NotReadyForRelease:
                result = "refused"
            except Exception as e:
                with lock:
                    errors.append(e)
                return
            finally:
                session.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert sorted(outcomes) == ["refused", "released"]
        assert db.query(AuditEntry).filter(AuditEntry.action == "funds_released").count() == 1
