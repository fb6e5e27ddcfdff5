"""Integration tests for the FastAPI endpoints."""

import pytest
from fastapi.testclient import TestClient

from library_lending.errors import ModelLoadError
from library_lending.main import create_app
from library_lending.settings import Settings
from library_lending.weights import ModelRegistry

from conftest import FACE_A, FACE_B, NO_FACE, NOT_AN_IMAGE


def _borrow(client, student_id="S123", student_class="P5", book_code="BK001", image=FACE_A):
    response = client.post("/borrow", json={
        "studentId": student_id,
        "studentClass": student_class,
        "bookCode": book_code,
        "image": image,
    })
    assert response.status_code == 201, response.text
    return response.json()


class TestInfo:

    def test_root(self, client):
        body = client.get("/").json()
        assert body["name"] == "Library Lending API"
        assert body["database_ready"] is True
        assert "POST /return" in body["endpoints"]

    def test_health(self, client):
        _borrow(client)
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["database"] == "ready"
        assert body["active_borrows"] == 1
        assert body["models_loaded"] is False

    def test_not_started(self, settings, extractor):
        # Without entering the client context the lifespan never runs
        client = TestClient(create_app(settings, extractor=extractor))

        health = client.get("/health")
        assert health.status_code == 503
        assert health.json()["database"] == "not initialized"

        listing = client.get("/borrowed")
        assert listing.status_code == 503
        assert listing.json()["error_code"] == "SERVICE_UNAVAILABLE"

    def test_startup_fails_without_models(self):
        def unavailable():
            raise ModelLoadError("weights unavailable")

        settings = Settings(database_url="sqlite://", preload_models=True, cors_origins=["*"])
        app = create_app(settings, registry=ModelRegistry([unavailable]))

        with pytest.raises(ModelLoadError):
            with TestClient(app):
                pass
        assert app.state.store is None


class TestBorrow:

    def test_borrow_creates_active_record(self, client):
        record = _borrow(client)
        assert record["id"] == 1
        assert record["student_id"] == "S123"
        assert record["student_class"] == "P5"
        assert record["book_code"] == "BK001"
        assert record["state"] == "active"
        assert record["returned"] is False
        assert record["return_date"] is None
        assert record["image"] == FACE_A

    def test_numeric_ids_are_accepted(self, client):
        record = _borrow(client, student_id=123)
        assert record["student_id"] == "123"

    def test_missing_field(self, client):
        response = client.post("/borrow", json={"studentId": "S123", "bookCode": "BK001", "image": FACE_A})
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error_code"] == "VALIDATION_ERROR"
        assert body["details"] == {"missing": ["studentClass"]}

    def test_missing_image(self, client):
        response = client.post("/borrow", json={"studentId": "S123", "studentClass": "P5", "bookCode": "BK001"})
        assert response.status_code == 400
        assert response.json()["message"] == "Image is required."

    def test_malformed_body(self, client):
        response = client.post("/borrow", content="not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_undecodable_image(self, client):
        response = client.post("/borrow", json={
            "studentId": "S123", "studentClass": "P5", "bookCode": "BK001", "image": NOT_AN_IMAGE,
        })
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_IMAGE"
        assert client.get("/health").json()["active_borrows"] == 0

    def test_borrow_record_lookup(self, client):
        created = _borrow(client)
        response = client.post("/borrow-record", json={"studentId": "S123", "bookCode": "BK001"})
        assert response.status_code == 200
        assert response.json()["id"] == created["id"]
        assert response.json()["image"] == FACE_A

    def test_borrow_record_not_found(self, client):
        response = client.post("/borrow-record", json={"studentId": "S123", "bookCode": "BK001"})
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"


class TestReturn:

    def test_verified_return(self, client):
        _borrow(client)

        response = client.post("/return", json={"studentId": "S123", "bookCode": "BK001", "image": FACE_A})

        assert response.status_code == 200
        body = response.json()
        assert body["decision"] == "verified"
        assert body["similarity_percent"] == 100
        assert body["returned"] is True
        assert body["record"]["state"] == "returned"
        assert body["record"]["return_date"] is not None

        again = client.post("/return", json={"studentId": "S123", "bookCode": "BK001", "image": FACE_A})
        assert again.status_code == 404

    def test_rejected_return(self, client):
        _borrow(client)

        response = client.post("/return", json={"studentId": "S123", "bookCode": "BK001", "image": FACE_B})

        assert response.status_code == 403
        body = response.json()
        assert body["error_code"] == "FACE_MISMATCH"
        assert "Similarity: 0%" in body["message"]
        assert body["details"]["similarity_percent"] == 0
        assert client.get("/health").json()["active_borrows"] == 1

    def test_manual_review_then_override(self, client):
        _borrow(client)
        payload = {"studentId": "S123", "bookCode": "BK001", "image": NO_FACE}

        review = client.post("/return", json=payload)
        assert review.status_code == 409
        assert review.json()["error_code"] == "NEEDS_MANUAL_REVIEW"
        assert review.json()["details"]["attempts"] == 3

        approved = client.post("/return", json={**payload, "manualOverride": True})
        assert approved.status_code == 200
        record = approved.json()["record"]
        assert record["state"] == "returned"
        assert record["return_verified"] is False
        assert record["return_similarity"] == 0.0

    def test_undecodable_live_image(self, client, extractor):
        _borrow(client)

        response = client.post("/return", json={
            "studentId": "S123", "bookCode": "BK001", "image": NOT_AN_IMAGE, "manualOverride": True,
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_IMAGE"
        assert extractor.calls == []
        assert client.get("/health").json()["active_borrows"] == 1

    def test_return_requires_image(self, client):
        _borrow(client)
        response = client.post("/return", json={"studentId": "S123", "bookCode": "BK001"})
        assert response.status_code == 400

    def test_return_unknown_loan(self, client):
        response = client.post("/return", json={"studentId": "S123", "bookCode": "BK001", "image": FACE_A})
        assert response.status_code == 404

    def test_verify_is_dry_run(self, client):
        _borrow(client)

        response = client.post("/verify", json={"studentId": "S123", "bookCode": "BK001", "image": FACE_B})

        assert response.status_code == 200
        assert response.json()["decision"] == "rejected"
        assert response.json()["record"]["state"] == "active"
        assert client.get("/health").json()["active_borrows"] == 1


class TestListing:

    def test_borrowed_order_and_filters(self, client):
        _borrow(client, student_id="S1", student_class="S2", book_code="BK001")
        _borrow(client, student_id="S2", student_class="P4", book_code="BK002")
        _borrow(client, student_id="S3", student_class="P4", book_code="MATH-1")

        records = client.get("/borrowed").json()
        assert [r["student_id"] for r in records] == ["S3", "S2", "S1"]

        filtered = client.get("/borrowed", params={"book": "bk", "includeImage": "false"}).json()
        assert [r["book_code"] for r in filtered] == ["BK002", "BK001"]
        assert all(r["image"] is None for r in filtered)

    def test_borrowed_by_class(self, client):
        _borrow(client, student_id="S1", student_class="S2", book_code="BK001")
        _borrow(client, student_id="S2", student_class="P4", book_code="BK002")

        groups = client.get("/borrowed/by-class").json()
        assert [g["student_class"] for g in groups] == ["P4", "S2"]
        assert groups[0]["count"] == 1

    def test_clear_all(self, client):
        _borrow(client)
        _borrow(client, book_code="BK002")

        response = client.delete("/clear-all")
        assert response.status_code == 200
        assert response.json()["count"] == 2
        assert client.get("/borrowed").json() == []


class TestDetectFace:

    def test_detect_face(self, client):
        assert client.post("/detect-face", json={"image": FACE_A}).json() == {"face_detected": True}
        assert client.post("/detect-face", json={"image": NO_FACE}).json() == {"face_detected": False}

    def test_detect_face_requires_image(self, client):
        assert client.post("/detect-face", json={}).status_code == 400
