"""HTTP client the booth uses to talk to the survey server."""

from __future__ import annotations

import logging
from typing import Any, Sequence

import requests

from .errors import ApiError

logger = logging.getLogger(__name__)


class BoothApiClient:
    def __init__(self, base_url: str, timeout_seconds: float = 15.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except requests.RequestException as exc:
            raise ApiError(f"Could not reach the booth server: {exc}") from exc
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if resp.status_code >= 400 or payload.get("success") is False:
            message = payload.get("error") or f"{method} {path} failed with HTTP {resp.status_code}"
            logger.warning("%s %s -> %s: %s", method, path, resp.status_code, message)
            raise ApiError(message, status=resp.status_code)
        return payload

    def fetch_questions(self, mode: str) -> list[dict]:
        return self._request("GET", "/api/questions", params={"mode": mode}).get("questions", [])

    def create_result(self) -> int:
        return int(self._request("POST", "/api/results")["resultId"])

    def fetch_result(self, result_id: int) -> dict:
        return self._request("GET", f"/api/results/{result_id}")["result"]

    def submit_answers(
        self,
        result_id: int,
        answers: Sequence[int],
        mode: str,
        questions: Sequence[dict] | None = None,
    ) -> dict:
        body = {"resultId": result_id, "answers": list(answers), "mode": mode, "questions": list(questions or [])}
        return self._request("POST", "/api/results/survey", json=body)

    def upload_photo(self, result_id: int, png_bytes: bytes) -> str:
        files = {"file": (f"photo-{result_id}.png", png_bytes, "image/png")}
        return self._request("POST", f"/api/results/{result_id}/photo", files=files)["photoUrl"]

    def list_backgrounds(self) -> list[str]:
        return list(self._request("GET", "/api/backgrounds").get("backgrounds", []))

    def download_url(self, result_id: int) -> str:
        return f"{self.base_url}/download/{result_id}"
