"""
HTTP Intake Service
===================
Flask-based HTTP API around the extraction engine.

Endpoints:
    POST   /api/upload-pdf               → Extract questions from a PDF
    GET    /api/tests                    → List extracted tests
    GET    /api/tests/<id>               → Test with its questions
    POST   /api/tests/<id>/publish       → Publish once all answers are set
    DELETE /api/tests/<id>               → Delete test and its images
    PUT    /api/questions/<id>           → Set the correct option
    PUT    /api/questions/<id>/image     → Replace the question image
    DELETE /api/questions/<id>           → Delete one question
    GET    /api/health                   → Health check
    GET    /api/info                     → Extractor version info
    GET    /questions/<path>             → Cropped question images
"""

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime, timezone
from typing import Optional

from flask import Blueprint, Flask, current_app, jsonify, request, send_from_directory
from flask_cors import CORS

from . import __version__
from . import database as db
from . import storage as fs_storage
from .engine import ExtractionEngine, ExtractorConfig
from .exceptions import ExtractionError

logger = logging.getLogger(__name__)

api = Blueprint("qextract", __name__)


def create_app(
    config: Optional[ExtractorConfig] = None,
    engine: Optional[ExtractionEngine] = None,
) -> Flask:
    """Create and configure the Flask app."""
    config = config or ExtractorConfig.from_env()
    engine = engine or ExtractionEngine(config)

    app = Flask(__name__)
    CORS(app)

    app.config["EXTRACTOR_CONFIG"] = config
    app.config["DB_PATH"] = config.db_path or db.get_db_path()
    app.config.setdefault("MAX_CONTENT_LENGTH", 200 * 1024 * 1024)  # 200MB
    app.extensions["qextract.engine"] = engine

    # Initialize persistence layer
    engine.layout.init()
    db.init_db(app.config["DB_PATH"])

    app.register_blueprint(api)

    def serve_questions(filename):
        """Serve cropped question images."""
        return send_from_directory(str(engine.layout.questions_dir), filename)

    app.add_url_rule(
        f"{engine.cropper.url_prefix}/<path:filename>",
        "serve_questions",
        serve_questions,
    )

    return app


def _engine() -> ExtractionEngine:
    return current_app.extensions["qextract.engine"]


def _db_path() -> str:
    return current_app.config["DB_PATH"]


# ─── Service Info ─────────────────────────────────────────────────────────────


@api.route("/api/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


@api.route("/api/info", methods=["GET"])
def info():
    """Extractor version and configuration info."""
    config = _engine().config
    return jsonify({
        "extractor_version": __version__,
        "dpi": config.dpi,
        "page_size": list(config.page_size) if config.page_size else None,
        "questions_per_page": config.questions_per_page,
        "vision_model": config.gemini_model,
        "vision_configured": bool(config.gemini_api_key),
    })


# ─── Upload & Extraction ──────────────────────────────────────────────────────


@api.route("/api/upload-pdf", methods=["POST"])
def upload_pdf():
    """
    Upload a PDF, extract its questions and store them as a new test.

    Form fields:
        pdf:        the PDF file
        test_name:  human-readable test name

    Returns:
        {"success": true, "test": {...}, "questions": [...], "pages": [...]}
    """
    file = request.files.get("pdf")
    if file is None or not file.filename:
        return jsonify({"error": "PDF file required"}), 400

    if not file.filename.lower().endswith(".pdf"):
        return jsonify({"error": "Only PDF files allowed"}), 400

    test_name = (request.form.get("test_name") or "").strip()
    if not test_name:
        return jsonify({"error": "Test name required"}), 400

    engine = _engine()
    stored_name = f"{int(time.time() * 1000)}_{file.filename}"
    pdf_path = fs_storage.save_uploaded_file(file, stored_name, engine.layout)

    try:
        result = engine.extract(str(pdf_path), test_name)
    except ExtractionError as e:
        logger.error(f"PDF upload failed: {e}")
        return jsonify({"error": str(e)}), 500

    try:
        test_id, _ = db.insert_test_with_questions(
            test_name, result.group_id, result.questions, db_path=_db_path()
        )
    except sqlite3.Error as e:
        logger.error(f"Storing test {test_name!r} failed: {e}", exc_info=True)
        engine.cropper.delete_group_images(result.group_id)
        return jsonify({"error": str(e)}), 500

    return jsonify({
        "success": True,
        "test": {
            "id": test_id,
            "name": test_name,
            "group_id": result.group_id,
            "total_questions": result.total_questions,
        },
        "questions": db.get_test_questions(test_id, db_path=_db_path()),
        "pages": [p.model_dump(mode="json") for p in result.pages],
    })


# ─── Tests ────────────────────────────────────────────────────────────────────


@api.route("/api/tests", methods=["GET"])
def list_tests():
    return jsonify({"tests": db.list_tests(db_path=_db_path())})


@api.route("/api/tests/<int:test_id>", methods=["GET"])
def get_test(test_id: int):
    test = db.get_test(test_id, db_path=_db_path())
    if not test:
        return jsonify({"error": "Test not found"}), 404
    return jsonify({"test": test})


@api.route("/api/tests/<int:test_id>/publish", methods=["POST"])
def publish_test(test_id: int):
    """Publish a test. Every question needs a correct option first."""
    if not db.get_test(test_id, db_path=_db_path()):
        return jsonify({"error": "Test not found"}), 404

    data = request.get_json(silent=True) or {}
    now = datetime.now(timezone.utc).isoformat()
    missing = db.publish_test(
        test_id,
        conduct_date=data.get("conduct_date") or now,
        visibility_date=data.get("visibility_date") or now,
        db_path=_db_path(),
    )
    if missing:
        return jsonify({
            "error": f"{missing} questions missing correct answers"
        }), 400

    return jsonify({"success": True, "test": db.get_test(test_id, db_path=_db_path())})


@api.route("/api/tests/<int:test_id>", methods=["DELETE"])
def delete_test(test_id: int):
    """Delete a test together with its whole image group."""
    test = db.get_test(test_id, db_path=_db_path())
    if not test:
        return jsonify({"error": "Test not found"}), 404

    _engine().cropper.delete_group_images(test["group_id"])
    db.delete_test(test_id, db_path=_db_path())
    return jsonify({"success": True})


# ─── Questions ────────────────────────────────────────────────────────────────


@api.route("/api/questions/<int:question_id>", methods=["PUT"])
def update_question(question_id: int):
    """Set (or clear with null) a question's correct option."""
    data = request.get_json(silent=True) or {}
    if "correct_option" not in data:
        return jsonify({"error": "correct_option required"}), 400

    option = data["correct_option"]
    if option is not None and option not in db.VALID_OPTIONS:
        return jsonify({"error": "Invalid option"}), 400

    if not db.update_question(question_id, correct_option=option, db_path=_db_path()):
        return jsonify({"error": "Question not found"}), 404

    return jsonify({
        "success": True,
        "question": db.get_question(question_id, db_path=_db_path()),
    })


@api.route("/api/questions/<int:question_id>/image", methods=["PUT"])
def replace_question_image(question_id: int):
    """Replace a question's image with an uploaded one."""
    question = db.get_question(question_id, db_path=_db_path())
    if not question:
        return jsonify({"error": "Question not found"}), 404

    file = request.files.get("image")
    if file is None:
        return jsonify({"error": "Image file required"}), 400

    try:
        new_url = _engine().cropper.replace_image(
            question["group_id"],
            question["question_image_url"],
            file.read(),
        )
    except (OSError, ValueError) as e:
        return jsonify({"error": f"Invalid image: {e}"}), 400

    db.update_question(question_id, question_image_url=new_url, db_path=_db_path())
    return jsonify({
        "success": True,
        "question": db.get_question(question_id, db_path=_db_path()),
    })


@api.route("/api/questions/<int:question_id>", methods=["DELETE"])
def delete_question(question_id: int):
    image_url = db.delete_question(question_id, db_path=_db_path())
    if image_url is None:
        return jsonify({"error": "Question not found"}), 404
    _engine().cropper.delete_image(image_url)
    return jsonify({"success": True})


# ─── Run Server ──────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
):
    """Start the intake server."""
    app = create_app()
    app.run(host=host, port=port, debug=debug)
