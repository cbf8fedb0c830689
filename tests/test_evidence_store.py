"""Tests for the evidence blob stores."""

import pytest

from services.evidence_store import (
    EvidenceBlob,
    InMemoryEvidenceStore,
    LocalEvidenceStore,
    safe_file_name,
)


@pytest.fixture(params=["local", "memory"])
def any_store(request, tmp_path):
    if request.param == "local":
        return LocalEvidenceStore(str(tmp_path / "evidence"))
    return InMemoryEvidenceStore()


class TestStores:
    def test_put_get_exists(self, any_store) -> None:
        blob = EvidenceBlob(data=b"%PDF-1.4", file_name="proof.pdf", mime_type="application/pdf")
        stored = any_store.put(blob, "rooms/abc/payment_proof")

        assert stored.ref.startswith("rooms/abc/payment_proof/")
        assert stored.ref.endswith("_proof.pdf")
        assert stored.size == 8
        assert any_store.exists(stored.ref)
        assert any_store.get(stored.ref) == b"%PDF-1.4"

    def test_delete(self, any_store) -> None:
        blob = EvidenceBlob(data=b"x", file_name="a.png", mime_type="image/png")
        stored = any_store.put(blob, "rooms/abc/identity_document")
        any_store.delete(stored.ref)
        assert not any_store.exists(stored.ref)
        any_store.delete(stored.ref)  # second delete is harmless

    def test_unknown_ref(self, any_store) -> None:
        assert not any_store.exists("rooms/none/file.pdf")
        with pytest.raises(KeyError):
            any_store.get("rooms/none/file.pdf")


class TestLocalStore:
    def test_refs_cannot_escape_root(self, tmp_path) -> None:
        store = LocalEvidenceStore(str(tmp_path / "evidence"))
        assert not store.exists("../outside.txt")
        with pytest.raises(KeyError):
            store.get("../../etc/passwd")

    def test_files_land_under_root(self, tmp_path) -> None:
        root = tmp_path / "evidence"
        store = LocalEvidenceStore(str(root))
        stored = store.put(EvidenceBlob(b"data", "receipt.jpg", "image/jpeg"), "rooms/r1/shipping_receipt")
        assert (root / stored.ref).read_bytes() == b"data"


class TestSafeFileName:
    @pytest.mark.parametrize("raw, expected", [
        ("proof.pdf", "proof.pdf"),
        ("../../etc/passwd", "passwd"),
        ("my receipt (1).png", "my_receipt_1_.png"),
        ("", "upload"),
        (None, "upload"),
        ("...", "upload"),
    ])
    def test_cleaning(self, raw, expected) -> None:
        assert safe_file_name(raw) == expected
