from __future__ import annotations

import logging
import os
import tempfile
import threading
from enum import Enum
from pathlib import Path
from typing import Callable

import cv2
import numpy as np

from .errors import BoothError, CaptureError
from .latest import LatestValue

logger = logging.getLogger(__name__)


class CaptureState(str, Enum):
    LIVE = "live"
    REVIEW = "review"
    DONE = "done"


class CaptureFlow:
    """Capture, review and confirm a composed canvas.

    ``uploader`` receives the PNG bytes and returns the stored photo URL. A
    confirmed photo is uploaded at most once at a time; a failed upload keeps
    the candidate so the guest can try again.
    """

    def __init__(
        self,
        canvas: LatestValue[np.ndarray | None],
        uploader: Callable[[bytes], str],
        preview_dir: Path | None = None,
    ) -> None:
        self._canvas = canvas
        self._uploader = uploader
        self._preview_dir = preview_dir
        self._lock = threading.Lock()
        self._submitting = False
        self.state = CaptureState.LIVE
        self.candidate: np.ndarray | None = None
        self.candidate_png: bytes | None = None
        self.preview_path: Path | None = None
        self.photo_url: str | None = None
        self.message: str | None = None

    @property
    def submitting(self) -> bool:
        with self._lock:
            return self._submitting

    def _release_preview(self) -> None:
        path, self.preview_path = self.preview_path, None
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove preview %s: %s", path, exc)

    def _write_preview(self, png: bytes) -> Path:
        fd, name = tempfile.mkstemp(prefix="candybooth-preview-", suffix=".png", dir=self._preview_dir)
        with os.fdopen(fd, "wb") as handle:
            handle.write(png)
        return Path(name)

    def capture(self) -> bool:
        with self._lock:
            if self._submitting or self.state != CaptureState.LIVE:
                return False
        frame = self._canvas.get()
        if frame is None or not isinstance(frame, np.ndarray) or frame.size == 0:
            raise CaptureError("Nothing to capture yet. Wait for the camera picture to appear.")
        if frame.ndim != 3 or frame.shape[2] != 3 or frame.dtype != np.uint8:
            raise CaptureError("The camera picture is not ready to be saved.")
        still = frame.copy()
        ok, encoded = cv2.imencode(".png", still)
        if not ok:
            raise CaptureError("Could not save the photo. Please try again.")
        png = encoded.tobytes()
        try:
            preview = self._write_preview(png)
        except OSError as exc:
            raise CaptureError(f"Could not save the photo preview: {exc}") from exc

        self._release_preview()
        self.candidate = still
        self.candidate_png = png
        self.preview_path = preview
        self.message = None
        self.state = CaptureState.REVIEW
        logger.info("Captured %sx%s photo for review", still.shape[1], still.shape[0])
        return True

    def retake(self) -> None:
        with self._lock:
            if self._submitting:
                return
        self._release_preview()
        self.candidate = None
        self.candidate_png = None
        self.message = None
        self.state = CaptureState.LIVE

    def confirm(self) -> str | None:
        with self._lock:
            if self._submitting or self.state != CaptureState.REVIEW or self.candidate_png is None:
                return None
            self._submitting = True
        try:
            photo_url = self._uploader(self.candidate_png)
        except BoothError as exc:
            self.message = f"Upload failed: {exc}"
            logger.warning("Photo upload failed: %s", exc)
            return None
        finally:
            with self._lock:
                self._submitting = False

        self._release_preview()
        self.photo_url = photo_url
        self.message = None
        self.state = CaptureState.DONE
        logger.info("Photo uploaded: %s", photo_url)
        return photo_url

    def close(self) -> None:
        self._release_preview()
