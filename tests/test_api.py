"""HTTP glue tests through FastAPI's TestClient, walking the full escrow flow."""

import uuid

import pytest
from fastapi.testclient import TestClient

from database import get_db
from api.deps import get_evidence_store
from core.room_manager import RoomManager
from main import app
from services.arbiter_service import create_arbiter
from services.evidence_store import InMemoryEvidenceStore

PNG = b"\x89PNG\r\n\x1a\n fake image body"


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    store = InMemoryEvidenceStore()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_evidence_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def gm_headers(session_factory):
    with session_factory() as session:
        gm = create_arbiter(session, "GM Api", "api-gm@example.com")
        gm_id = str(gm.id)
        session.commit()
    return {"X-Arbiter-Id": gm_id}


def _create_room(client, gm_headers):
    response = client.post("/api/rooms", json={}, headers=gm_headers)
    assert response.status_code == 200
    return response.json()["room_number"]


def _join(client, room_number, role, name):
    response = client.post(
        f"/api/rooms/{room_number}/join",
        json={"role": role, "name": name, "contact": "081234567890"},
    )
    assert response.status_code == 200, response.text
    return {"X-Session-Token": response.json()["session_token"]}


def _upload(client, room_number, headers, file_type, content=PNG, mime="image/png"):
    return client.post(
        f"/api/rooms/{room_number}/evidence",
        data={"file_type": file_type},
        files={"file": ("evidence.png", content, mime)},
        headers=headers,
    )


class TestRoomEndpoints:
    def test_health(self, client) -> None:
        assert client.get("/health").json() == {"status": "healthy"}

    def test_create_requires_gm(self, client) -> None:
        response = client.post("/api/rooms", json={})
        assert response.status_code == 403
        assert response.json()["detail"]["kind"] == "NotArbiter"

    def test_unknown_room_is_404(self, client) -> None:
        response = client.get("/api/rooms/R-NOPE00")
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "RoomNotFound"

    def test_join_and_availability(self, client, gm_headers) -> None:
        room_number = _create_room(client, gm_headers)
        assert client.get(f"/api/rooms/{room_number}/availability?role=seller").json()["available"] is False

        _join(client, room_number, "buyer", "Budi")
        room = client.get(f"/api/rooms/{room_number}").json()
        assert room["status"] == "in_use"
        assert room["buyer"]["name"] == "Budi"
        assert room["seller"] is None

        duplicate = client.post(
            f"/api/rooms/{room_number}/join",
            json={"role": "buyer", "name": "Other", "contact": "0812"},
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["kind"] == "RoleUnavailable"

    def test_leave_requires_session_token(self, client, gm_headers) -> None:
        room_number = _create_room(client, gm_headers)
        buyer = _join(client, room_number, "buyer", "Budi")

        assert client.post(f"/api/rooms/{room_number}/leave").status_code == 404
        response = client.post(f"/api/rooms/{room_number}/leave", headers=buyer)
        assert response.status_code == 200
        assert response.json()["status"] == "free"

    def test_offline_then_heartbeat(self, client, gm_headers) -> None:
        room_number = _create_room(client, gm_headers)
        buyer = _join(client, room_number, "buyer", "Budi")

        offline = client.post(f"/api/rooms/{room_number}/offline", headers=buyer)
        assert offline.status_code == 200
        assert offline.json()["is_online"] is False
        assert client.get(f"/api/rooms/{room_number}").json()["buyer"]["name"] == "Budi"

        assert client.post(f"/api/rooms/{room_number}/heartbeat", headers=buyer).status_code == 200
        assert client.post(f"/api/rooms/{room_number}/offline").status_code == 404

    def test_activity_log(self, client, gm_headers) -> None:
        room_number = _create_room(client, gm_headers)
        _join(client, room_number, "buyer", "Budi")

        entries = client.get(f"/api/rooms/{room_number}/activity").json()["entries"]
        assert [e["action"] for e in entries] == ["room_created", "joined_room"]
        assert entries[0]["actor_role"] == "gm"


class TestEscrowFlow:
    def test_full_flow(self, client, gm_headers) -> None:
        room_number = _create_room(client, gm_headers)
        buyer = _join(client, room_number, "buyer", "Budi")
        seller = _join(client, room_number, "seller", "Sari")

        # Payment proof
        upload = _upload(client, room_number, buyer, "payment_proof")
        assert upload.status_code == 200, upload.text
        payment_id = upload.json()["id"]

        again = _upload(client, room_number, buyer, "payment_proof")
        assert again.status_code == 409
        assert again.json()["detail"]["kind"] == "EvidenceAlreadyPending"

        pending = client.get("/api/gm/evidence/pending", headers=gm_headers).json()
        assert [f["id"] for f in pending] == [payment_id]

        wrong = client.post(f"/api/gm/shipping-receipts/{payment_id}/approve", headers=gm_headers)
        assert wrong.status_code == 409
        assert wrong.json()["detail"]["kind"] == "WrongType"

        approved = client.post(f"/api/gm/payment-proofs/{payment_id}/approve", headers=gm_headers)
        assert approved.json()["status"] == "verified"

        transaction = client.get(f"/api/rooms/{room_number}/transaction").json()
        assert transaction["status"] == "paid"
        assert transaction["progress"] == 33
        transaction_id = transaction["id"]

        # Shipping receipt
        receipt = _upload(client, room_number, seller, "shipping_receipt")
        assert receipt.status_code == 200
        client.post(f"/api/gm/shipping-receipts/{receipt.json()['id']}/approve", headers=gm_headers)

        # Only the buyer confirms receipt
        by_seller = client.post(
            f"/api/transactions/{transaction_id}/confirm-receipt", json={}, headers=seller
        )
        assert by_seller.status_code == 403
        confirmed = client.post(
            f"/api/transactions/{transaction_id}/confirm-receipt",
            json={"notes": "Received"},
            headers=buyer,
        )
        assert confirmed.json()["status"] == "goods_received"

        # Release once
        released = client.post(
            f"/api/gm/transactions/{transaction_id}/release", json={"notes": "ok"}, headers=gm_headers
        )
        assert released.status_code == 200
        assert released.json()["status"] == "completed"

        twice = client.post(f"/api/gm/transactions/{transaction_id}/release", json={}, headers=gm_headers)
        assert twice.status_code == 409
        assert twice.json()["detail"]["kind"] == "NotReadyForRelease"

        summary = client.get(f"/api/transactions/{transaction_id}/summary").json()
        assert summary["progress"] == 100
        assert summary["current_action"] == "Transaction completed"

    def test_invalid_upload_is_422(self, client, gm_headers) -> None:
        room_number = _create_room(client, gm_headers)
        buyer = _join(client, room_number, "buyer", "Budi")

        response = _upload(client, room_number, buyer, "payment_proof", content=b"hello", mime="text/plain")
        assert response.status_code == 422
        assert response.json()["detail"]["kind"] == "InvalidEvidenceFile"

    def test_reject_requires_reason(self, client, gm_headers) -> None:
        room_number = _create_room(client, gm_headers)
        buyer = _join(client, room_number, "buyer", "Budi")
        payment_id = _upload(client, room_number, buyer, "payment_proof").json()["id"]

        response = client.post(
            f"/api/gm/payment-proofs/{payment_id}/reject", json={"reason": ""}, headers=gm_headers
        )
        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "MissingReason"

        response = client.post(
            f"/api/gm/payment-proofs/{payment_id}/reject", json={"reason": "Blurry"}, headers=gm_headers
        )
        assert response.json()["status"] == "rejected"
        transaction = client.get(f"/api/rooms/{room_number}/transaction").json()
        assert transaction["status"] == "payment_rejected"
        assert transaction["payment_rejection_reason"] == "Blurry"

    def test_cancel_and_reset(self, client, gm_headers) -> None:
        room_number = _create_room(client, gm_headers)
        buyer = _join(client, room_number, "buyer", "Budi")
        _upload(client, room_number, buyer, "payment_proof")
        transaction_id = client.get(f"/api/rooms/{room_number}/transaction").json()["id"]

        locked = client.post(f"/api/rooms/{room_number}/reset", json={"reason": "restart"}, headers=gm_headers)
        assert locked.status_code == 409
        assert locked.json()["detail"]["kind"] == "ParticipantLocked"

        cancelled = client.post(
            f"/api/gm/transactions/{transaction_id}/cancel", json={"reason": "Buyer withdrew"}, headers=gm_headers
        )
        assert cancelled.json()["status"] == "cancelled"

        reset = client.post(f"/api/rooms/{room_number}/reset", json={"reason": "restart"}, headers=gm_headers)
        assert reset.status_code == 200
        assert reset.json()["status"] == "free"

    def test_unknown_transaction_is_404(self, client) -> None:
        response = client.get(f"/api/transactions/{uuid.uuid4()}/summary")
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "TransactionNotFound"


class TestErrorConventions:
    def test_unexpected_failure_is_generic_500(self, client, monkeypatch) -> None:
        def broken_lookup(db, room_number):
            raise RuntimeError("database unreachable")

        monkeypatch.setattr(RoomManager, "get_room_by_number", broken_lookup)

        for response in (
            client.get("/api/rooms/R-ANY000"),
            client.post("/api/rooms/R-ANY000/join", json={"role": "buyer", "name": "Budi", "contact": "0812"}),
            client.get("/api/rooms/R-ANY000/transaction"),
        ):
            assert response.status_code == 500
            assert response.json() == {"detail": "Internal error"}

    def test_error_body_is_documented(self, client) -> None:
        schema = client.get("/openapi.json").json()
        assert "ErrorResponse" in schema["components"]["schemas"]

        responses = schema["paths"]["/api/gm/transactions/{transaction_id}/release"]["post"]["responses"]
        for code in ("403", "404", "409"):
            assert responses[code]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")
