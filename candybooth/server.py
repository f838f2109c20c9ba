from __future__ import annotations

import base64
import html
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Sequence

import cv2
import numpy as np
from flask import Flask, Response, jsonify, request, send_from_directory

from .config import ServerConfig, server_config_from_args
from .errors import LayerResolutionError, ResultNotFoundError
from .layers import MODES, composite_layers, generated_object_path, resolve_layers
from .qr import make_qr_png
from .storage import CANDY_BUCKET, PHOTO_BUCKET, LocalObjectStore, ObjectExistsError
from .store import QuestionBank, ResultStore

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp")
MAX_PATH_ATTEMPTS = 5


def _error(message: str, status: int) -> tuple[Response, int]:
    return jsonify({"success": False, "error": message}), status


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _natural_key(name: str) -> list:
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def _parse_mode(body: dict) -> str | None:
    mode = body.get("mode")
    if mode is None and isinstance(body.get("isAdult"), bool):
        mode = "adult" if body["isAdult"] else "child"
    return mode if mode in MODES else None


def _build_download_page(result_id: int, photo_url: str, candy_url: str | None, qr_png: bytes) -> str:
    qr_data_url = "data:image/png;base64," + base64.b64encode(qr_png).decode("ascii")
    photo = html.escape(photo_url, quote=True)
    candy_link = (
        f'<p><a href="{html.escape(candy_url, quote=True)}" target="_blank" rel="noreferrer">Open your candy</a></p>'
        if candy_url
        else ""
    )
    return f"""
<!doctype html>
<html>
  <head><meta name="viewport" content="width=device-width, initial-scale=1.0"><title>Candy Booth #{result_id}</title></head>
  <body style="font-family:Arial;padding:20px;text-align:center;">
    <h2>Your photo is ready</h2>
    <p>Scan to download on your phone:</p>
    <img src="{qr_data_url}" alt="QR code for photo {result_id}" width="256" height="256"/>
    <p><a href="{qr_data_url}" download="qr-{result_id}.png">Save QR code</a></p>
    <p><a href="{photo}" target="_blank" rel="noreferrer">Open your photo</a></p>
    {candy_link}
  </body>
</html>
"""


def create_app(
    config: ServerConfig,
    store: ResultStore | None = None,
    questions: QuestionBank | None = None,
    objects: LocalObjectStore | None = None,
    clock: Callable[[], float] = time.time,
) -> Flask:
    app = Flask(__name__)
    store = store or ResultStore(config.results_path)
    questions = questions or QuestionBank.from_file(config.questions_path)
    objects = objects or LocalObjectStore(config.media_root, config.public_url)

    def _now_ms() -> int:
        return int(clock() * 1000)

    def _put_generated(answers: Sequence[int], mode: str, png: bytes) -> str:
        stamp = _now_ms()
        for attempt in range(MAX_PATH_ATTEMPTS):
            object_path = generated_object_path(answers, mode, stamp + attempt)
            try:
                return objects.put(CANDY_BUCKET, object_path, png, content_type="image/png")
            except ObjectExistsError:
                continue
        raise ObjectExistsError("could not allocate a unique object path for the generated image")

    @app.get("/api/questions")
    def list_questions():
        mode = request.args.get("mode")
        if mode is None:
            mode = "adult" if request.args.get("isAdult") == "true" else "child"
        if mode not in MODES:
            return _error(f"Unknown mode: {mode}", 400)
        found = questions.for_mode(mode)
        if not found:
            return _error("No questions found", 404)
        return jsonify({"success": True, "questions": [q.to_api() for q in found]}), 200

    @app.post("/api/results")
    def create_result():
        try:
            record = store.create()
        except OSError:
            logger.exception("Failed to create result record")
            return _error("Failed to create result", 500)
        logger.info("Created result %s", record.id)
        return jsonify({"success": True, "resultId": record.id}), 200

    @app.get("/api/results/<int:result_id>")
    def get_result(result_id: int):
        try:
            record = store.get(result_id)
        except ResultNotFoundError:
            return _error("Result not found", 404)
        return jsonify({"success": True, "result": record.to_api()}), 200

    @app.post("/api/results/survey")
    def submit_survey():
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return _error("Invalid request data", 400)
        result_id = body.get("resultId")
        answers = body.get("answers")
        if not _is_int(result_id):
            return _error("Invalid result id", 400)
        if not isinstance(answers, list) or not all(_is_int(a) for a in answers):
            return _error("Answers must be a list of option IDs", 400)
        mode = _parse_mode(body)
        if mode is None:
            return _error("Mode must be 'adult' or 'child'", 400)
        if not store.exists(result_id):
            return _error("Result record not found", 404)

        layers = resolve_layers(answers, mode, config.content_root)
        try:
            png = composite_layers(layers)
        except LayerResolutionError as exc:
            logger.info("Result %s: no layers matched answers %s (%s)", result_id, answers, mode)
            return _error(str(exc), 422)

        try:
            candy_url = _put_generated(answers, mode, png)
        except OSError:
            logger.exception("Failed to store generated image for result %s", result_id)
            return _error("Failed to save survey answers", 500)

        try:
            record, duplicate_rank = store.record_answers(result_id, answers, candy_url, mode)
        except OSError:
            logger.exception("Failed to record survey answers for result %s", result_id)
            return _error("Failed to save survey answers", 500)
        previous_count = max(0, duplicate_rank - 1)
        logger.info(
            "Survey saved: result=%s answers=%d layers=%s candy=%s rank=%d questions=%d",
            record.id,
            len(answers),
            ",".join(f"{layer.slot}:{layer.answer_id}" for layer in layers),
            candy_url,
            duplicate_rank,
            len(body.get("questions") or []),
        )
        return (
            jsonify(
                {
                    "success": True,
                    "resultId": record.id,
                    "candyUrl": candy_url,
                    "duplicateRank": duplicate_rank,
                    "previousCount": previous_count,
                }
            ),
            200,
        )

    @app.post("/api/results/<int:result_id>/photo")
    def upload_photo(result_id: int):
        if not store.exists(result_id):
            return _error("Result not found", 404)
        photo = request.files.get("file")
        if photo is None:
            return _error("Missing photo field.", 400)
        raw = photo.read()
        frame = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_COLOR) if raw else None
        if frame is None:
            return _error("Invalid image.", 400)

        object_path = f"results/{result_id}/photo-{_now_ms()}.png"
        try:
            photo_url = objects.put(PHOTO_BUCKET, object_path, raw, content_type=photo.mimetype or "image/png")
        except OSError:
            logger.exception("Failed to store photo for result %s", result_id)
            return _error("Failed to save photo", 500)
        try:
            record = store.record_photo(result_id, photo_url)
        except OSError:
            logger.exception("Failed to record photo for result %s", result_id)
            return _error("Failed to save photo", 500)
        logger.info("Photo saved: result=%s size=%sx%s url=%s", result_id, frame.shape[1], frame.shape[0], photo_url)
        return jsonify({"success": True, "photoUrl": record.photo_url}), 200

    @app.get("/api/backgrounds")
    def list_backgrounds():
        folder = config.backgrounds_dir
        names = []
        if folder.is_dir():
            names = sorted(
                (p.name for p in folder.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES),
                key=_natural_key,
            )
        urls = [f"{config.public_url}/assets/backgrounds/{name}" for name in names]
        return jsonify({"success": True, "backgrounds": urls}), 200

    @app.get("/download/<int:result_id>")
    def download_page(result_id: int):
        try:
            record = store.get(result_id)
        except ResultNotFoundError:
            return "Result not found.", 404
        if not record.photo_url:
            return "Photo not ready yet. Take your photo at the booth first.", 404
        page = _build_download_page(result_id, record.photo_url, record.candy_url, make_qr_png(record.photo_url))
        return page, 200

    @app.get("/download/<int:result_id>/qr.png")
    def download_qr(result_id: int):
        try:
            record = store.get(result_id)
        except ResultNotFoundError:
            return "Result not found.", 404
        if not record.photo_url:
            return "Photo not ready yet.", 404
        return Response(make_qr_png(record.photo_url), mimetype="image/png")

    @app.get("/media/<path:object_path>")
    def media(object_path: str):
        return send_from_directory(Path(config.media_root).resolve(), object_path)

    @app.get("/assets/<path:asset_path>")
    def assets(asset_path: str):
        return send_from_directory(Path(config.content_root).resolve(), asset_path)

    return app


def main(argv: Sequence[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(name)s: %(message)s")
    config = server_config_from_args(argv)
    app = create_app(config)
    logging.getLogger("werkzeug").setLevel(logging.ERROR)
    logger.info("Serving on %s:%s (public URL %s, content %s)", config.host, config.port, config.public_url, config.content_root)
    app.run(host=config.host, port=config.port, debug=False, use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
