"""
Test Suite for the HTTP Intake Service and Document Store
=========================================================
Drives the Flask app through its test client with a vision backend that is
always unavailable, so every page takes the five-strip fallback.
"""

from __future__ import annotations

import io
import re

import pytest

from qextract import database as db
from qextract.engine import ExtractionEngine
from qextract.models import CroppedQuestion
from qextract.server import create_app

from tests.helpers import UnavailableVision, make_config, make_pdf, png_bytes


@pytest.fixture
def app(tmp_path):
    config = make_config(
        tmp_path / "storage", db_path=str(tmp_path / "db" / "test.sqlite")
    )
    engine = ExtractionEngine(config, vision_client=UnavailableVision())
    app = create_app(config, engine=engine)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def engine(app):
    return app.extensions["qextract.engine"]


def _pdf_upload(tmp_path, pages=2, filename="exam.pdf"):
    pdf = make_pdf(tmp_path / "source.pdf", pages=pages)
    return io.BytesIO(pdf.read_bytes()), filename


def _upload(client, tmp_path, pages=2, test_name="Physics Mock"):
    response = client.post(
        "/api/upload-pdf",
        data={"pdf": _pdf_upload(tmp_path, pages), "test_name": test_name},
        content_type="multipart/form-data",
    )
    assert response.status_code == 200, response.get_json()
    return response.get_json()


# ═══════════════════════════════════════════════════════════════════════════════
# SERVICE INFO
# ═══════════════════════════════════════════════════════════════════════════════


class TestServiceInfo:

    def test_health(self, client):
        data = client.get("/api/health").get_json()
        assert data["status"] == "healthy"

    def test_info(self, client):
        data = client.get("/api/info").get_json()
        assert data["dpi"] == 72
        assert data["page_size"] == [400, 600]
        assert data["questions_per_page"] == 5
        assert data["vision_configured"] is False


# ═══════════════════════════════════════════════════════════════════════════════
# UPLOAD TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestUpload:
    """Test PDF intake and extraction through HTTP."""

    def test_missing_file(self, client):
        response = client.post(
            "/api/upload-pdf",
            data={"test_name": "Mock"},
            content_type="multipart/form-data",
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "PDF file required"

    def test_wrong_extension(self, client):
        response = client.post(
            "/api/upload-pdf",
            data={"pdf": (io.BytesIO(b"hello"), "notes.txt"), "test_name": "Mock"},
            content_type="multipart/form-data",
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "Only PDF files allowed"

    def test_missing_test_name(self, client, tmp_path):
        response = client.post(
            "/api/upload-pdf",
            data={"pdf": _pdf_upload(tmp_path), "test_name": "  "},
            content_type="multipart/form-data",
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "Test name required"

    def test_successful_upload(self, client, engine, tmp_path):
        data = _upload(client, tmp_path, pages=2)

        assert data["success"] is True
        assert data["test"]["name"] == "Physics Mock"
        assert data["test"]["total_questions"] == 10

        questions = data["questions"]
        assert [q["question_number"] for q in questions] == list(range(1, 11))
        assert all(q["correct_option"] is None for q in questions)
        assert [p["source"] for p in data["pages"]] == ["fallback", "fallback"]

        group_id = data["test"]["group_id"]
        for q in questions:
            assert re.match(
                rf"^/questions/{group_id}/q\d+_[0-9a-f]{{32}}\.png$",
                q["question_image_url"],
            )

        # Uploaded PDF and scratch pages are gone after success
        assert list(engine.layout.uploads_dir.iterdir()) == []
        assert not engine.layout.scratch_dir(group_id).exists()

    def test_images_are_served(self, client, tmp_path):
        data = _upload(client, tmp_path, pages=1)
        url = data["questions"][0]["question_image_url"]

        response = client.get(url)
        assert response.status_code == 200
        assert response.mimetype == "image/png"
        assert response.data.startswith(b"\x89PNG")

    def test_corrupt_pdf(self, client, engine):
        response = client.post(
            "/api/upload-pdf",
            data={
                "pdf": (io.BytesIO(b"definitely not a pdf"), "broken.pdf"),
                "test_name": "Broken",
            },
            content_type="multipart/form-data",
        )
        assert response.status_code == 500
        assert "error" in response.get_json()

        assert len(list(engine.layout.uploads_dir.iterdir())) == 1
        assert list(engine.layout.questions_dir.iterdir()) == []
        assert client.get("/api/tests").get_json()["tests"] == []


# ═══════════════════════════════════════════════════════════════════════════════
# TEST MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════════


class TestTests:
    """Test listing, publishing and deleting tests."""

    def test_list_and_get(self, client, tmp_path):
        data = _upload(client, tmp_path, pages=1, test_name="Chemistry")
        test_id = data["test"]["id"]

        tests = client.get("/api/tests").get_json()["tests"]
        assert len(tests) == 1
        assert tests[0]["name"] == "Chemistry"
        assert tests[0]["question_count"] == 5
        assert tests[0]["unanswered_count"] == 5
        assert tests[0]["is_published"] is False

        test = client.get(f"/api/tests/{test_id}").get_json()["test"]
        assert [q["question_number"] for q in test["questions"]] == [1, 2, 3, 4, 5]

    def test_get_missing(self, client):
        assert client.get("/api/tests/999").status_code == 404

    def test_publish_requires_every_answer(self, client, tmp_path):
        data = _upload(client, tmp_path, pages=1)
        test_id = data["test"]["id"]

        response = client.post(f"/api/tests/{test_id}/publish", json={})
        assert response.status_code == 400
        assert response.get_json()["error"] == "5 questions missing correct answers"

        for q in data["questions"]:
            client.put(f"/api/questions/{q['id']}", json={"correct_option": "A"})

        response = client.post(
            f"/api/tests/{test_id}/publish",
            json={"conduct_date": "2026-11-01T09:00:00+00:00"},
        )
        assert response.status_code == 200
        test = response.get_json()["test"]
        assert test["is_published"] is True
        assert test["conduct_date"] == "2026-11-01T09:00:00+00:00"
        assert test["visibility_date"]

    def test_publish_missing(self, client):
        assert client.post("/api/tests/42/publish", json={}).status_code == 404

    def test_delete_test(self, client, engine, tmp_path):
        data = _upload(client, tmp_path, pages=1)
        test_id = data["test"]["id"]
        group_dir = engine.layout.questions_dir / data["test"]["group_id"]
        assert group_dir.exists()

        response = client.delete(f"/api/tests/{test_id}")
        assert response.status_code == 200
        assert not group_dir.exists()
        assert client.get(f"/api/tests/{test_id}").status_code == 404

        assert client.delete(f"/api/tests/{test_id}").status_code == 404


# ═══════════════════════════════════════════════════════════════════════════════
# QUESTION EDITING
# ═══════════════════════════════════════════════════════════════════════════════


class TestQuestions:
    """Test answer-key entry, image replacement and deletion."""

    def test_set_correct_option(self, client, tmp_path):
        question = _upload(client, tmp_path, pages=1)["questions"][0]

        response = client.put(
            f"/api/questions/{question['id']}", json={"correct_option": "B"}
        )
        assert response.status_code == 200
        assert response.get_json()["question"]["correct_option"] == "B"

        response = client.put(
            f"/api/questions/{question['id']}", json={"correct_option": None}
        )
        assert response.status_code == 200
        assert response.get_json()["question"]["correct_option"] is None

    def test_invalid_option(self, client, tmp_path):
        question = _upload(client, tmp_path, pages=1)["questions"][0]
        response = client.put(
            f"/api/questions/{question['id']}", json={"correct_option": "E"}
        )
        assert response.status_code == 400

    def test_option_required(self, client, tmp_path):
        question = _upload(client, tmp_path, pages=1)["questions"][0]
        response = client.put(f"/api/questions/{question['id']}", json={})
        assert response.status_code == 400

    def test_unknown_question(self, client):
        response = client.put("/api/questions/999", json={"correct_option": "A"})
        assert response.status_code == 404

    def test_replace_image(self, client, engine, tmp_path):
        question = _upload(client, tmp_path, pages=1)["questions"][0]
        old_path = engine.cropper.path_for_url(question["question_image_url"])
        assert old_path.exists()

        response = client.put(
            f"/api/questions/{question['id']}/image",
            data={"image": (io.BytesIO(png_bytes()), "fixed.png")},
            content_type="multipart/form-data",
        )
        assert response.status_code == 200
        new_url = response.get_json()["question"]["question_image_url"]
        assert "/replaced_" in new_url
        assert not old_path.exists()
        assert client.get(new_url).status_code == 200

    def test_replace_with_invalid_image(self, client, tmp_path):
        question = _upload(client, tmp_path, pages=1)["questions"][0]
        response = client.put(
            f"/api/questions/{question['id']}/image",
            data={"image": (io.BytesIO(b"garbage"), "fixed.png")},
            content_type="multipart/form-data",
        )
        assert response.status_code == 400

    def test_delete_question(self, client, engine, tmp_path):
        data = _upload(client, tmp_path, pages=1)
        question = data["questions"][0]
        image_path = engine.cropper.path_for_url(question["question_image_url"])

        response = client.delete(f"/api/questions/{question['id']}")
        assert response.status_code == 200
        assert not image_path.exists()

        test = client.get(f"/api/tests/{data['test']['id']}").get_json()["test"]
        assert test["total_questions"] == 4
        assert len(test["questions"]) == 4

        assert client.delete(f"/api/questions/{question['id']}").status_code == 404


# ═══════════════════════════════════════════════════════════════════════════════
# DOCUMENT STORE
# ═══════════════════════════════════════════════════════════════════════════════


class TestDatabase:
    """Test the SQLite document store directly."""

    @pytest.fixture
    def db_path(self, tmp_path):
        path = str(tmp_path / "store.sqlite")
        db.init_db(path)
        return path

    def _questions(self, count):
        return [
            CroppedQuestion(
                question_number=n,
                question_image_url=f"/questions/g1/q{n}_t.png",
                page_number=1,
            )
            for n in range(1, count + 1)
        ]

    def test_insert_preserves_order(self, db_path):
        test_id, ids = db.insert_test_with_questions(
            "Mock", "g1", self._questions(3), db_path=db_path
        )
        assert len(ids) == 3
        questions = db.get_test_questions(test_id, db_path=db_path)
        assert [q["id"] for q in questions] == ids
        assert [q["question_number"] for q in questions] == [1, 2, 3]

    def test_init_is_idempotent(self, db_path):
        db.init_db(db_path)
        assert db.list_tests(db_path=db_path) == []

    def test_update_question_rejects_invalid_option(self, db_path):
        _, ids = db.insert_test_with_questions(
            "Mock", "g1", self._questions(1), db_path=db_path
        )
        with pytest.raises(ValueError):
            db.update_question(ids[0], correct_option="Z", db_path=db_path)

    def test_update_question_ignores_unknown_fields(self, db_path):
        _, ids = db.insert_test_with_questions(
            "Mock", "g1", self._questions(1), db_path=db_path
        )
        assert db.update_question(ids[0], test_id=99, db_path=db_path) is False

    def test_question_joins_group(self, db_path):
        _, ids = db.insert_test_with_questions(
            "Mock", "g1", self._questions(2), db_path=db_path
        )
        question = db.get_question(ids[1], db_path=db_path)
        assert question["group_id"] == "g1"
        assert question["question_number"] == 2

    def test_delete_test_cascades(self, db_path):
        test_id, ids = db.insert_test_with_questions(
            "Mock", "g1", self._questions(2), db_path=db_path
        )
        assert db.delete_test(test_id, db_path=db_path) is True
        assert db.get_question(ids[0], db_path=db_path) is None
        assert db.delete_test(test_id, db_path=db_path) is False

    def test_unanswered_count(self, db_path):
        _, ids = db.insert_test_with_questions(
            "Mock", "g1", self._questions(3), db_path=db_path
        )
        db.update_question(ids[0], correct_option="C", db_path=db_path)
        [test] = db.list_tests(db_path=db_path)
        assert test["question_count"] == 3
        assert test["unanswered_count"] == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
