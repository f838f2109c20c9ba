"""MediaPipe model files and detector construction.

Model files are fetched once per process and shared by every booth session.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable
from urllib.request import urlretrieve

import numpy as np

from .errors import DetectorLoadError

logger = logging.getLogger(__name__)

HAND_LANDMARKER_URL = (
    "https://storage.googleapis.com/mediapipe-models/hand_landmarker/"
    "hand_landmarker/float16/latest/hand_landmarker.task"
)
SELFIE_SEGMENTER_URLS = {
    "square": (
        "https://storage.googleapis.com/mediapipe-models/image_segmenter/"
        "selfie_segmenter/float16/latest/selfie_segmenter.tflite"
    ),
    "landscape": (
        "https://storage.googleapis.com/mediapipe-models/image_segmenter/"
        "selfie_segmenter_landscape/float16/latest/selfie_segmenter_landscape.tflite"
    ),
}

HAND_OPTIONS = {
    "num_hands": 2,
    "min_hand_detection_confidence": 0.6,
    "min_hand_presence_confidence": 0.5,
    "min_tracking_confidence": 0.5,
}


class ModelCache:
    """Initialize-once cache of downloaded model files.

    Concurrent callers asking for the same model wait on one download. A
    failed download is forgotten so a later call can try again.
    """

    def __init__(self, model_dir: Path, fetch: Callable[[str, Path], Any] = urlretrieve) -> None:
        self.model_dir = Path(model_dir)
        self._fetch = fetch
        self._lock = threading.Lock()
        self._paths: dict[str, Path] = {}
        self._key_locks: dict[str, threading.Lock] = {}

    def get(self, filename: str, url: str) -> Path:
        with self._lock:
            cached = self._paths.get(filename)
            if cached is not None:
                return cached
            key_lock = self._key_locks.setdefault(filename, threading.Lock())
        with key_lock:
            with self._lock:
                cached = self._paths.get(filename)
            if cached is not None:
                return cached
            path = self.model_dir / filename
            if not path.exists():
                logger.info("Downloading %s to %s", url, path)
                path.parent.mkdir(parents=True, exist_ok=True)
                partial = path.with_name(path.name + ".part")
                try:
                    self._fetch(url, partial)
                    partial.replace(path)
                except Exception as exc:
                    partial.unlink(missing_ok=True)
                    raise DetectorLoadError(f"Could not load model {filename}: {exc}") from exc
            with self._lock:
                self._paths[filename] = path
            return path

    def reset(self) -> None:
        with self._lock:
            self._paths.clear()
            self._key_locks.clear()


_shared_cache: ModelCache | None = None
_shared_lock = threading.Lock()


def shared_model_cache(model_dir: Path) -> ModelCache:
    global _shared_cache
    with _shared_lock:
        if _shared_cache is None or _shared_cache.model_dir != Path(model_dir):
            _shared_cache = ModelCache(model_dir)
        return _shared_cache


def reset_shared_model_cache() -> None:
    global _shared_cache
    with _shared_lock:
        if _shared_cache is not None:
            _shared_cache.reset()
        _shared_cache = None


def create_hand_landmarker(model_path: Path, result_callback: Callable) -> Any:
    from mediapipe.tasks import python as mp_python
    from mediapipe.tasks.python import vision

    options = vision.HandLandmarkerOptions(
        base_options=mp_python.BaseOptions(model_asset_path=str(model_path)),
        running_mode=vision.RunningMode.LIVE_STREAM,
        result_callback=result_callback,
        **HAND_OPTIONS,
    )
    return vision.HandLandmarker.create_from_options(options)


def create_selfie_segmenter(model_path: Path, result_callback: Callable) -> Any:
    from mediapipe.tasks import python as mp_python
    from mediapipe.tasks.python import vision

    options = vision.ImageSegmenterOptions(
        base_options=mp_python.BaseOptions(model_asset_path=str(model_path)),
        running_mode=vision.RunningMode.LIVE_STREAM,
        output_confidence_masks=True,
        output_category_mask=False,
        result_callback=result_callback,
    )
    return vision.ImageSegmenter.create_from_options(options)


def to_mp_image(frame_rgb: Any) -> Any:
    import mediapipe as mp

    return mp.Image(image_format=mp.ImageFormat.SRGB, data=frame_rgb)


def person_mask_from_result(result: Any) -> np.ndarray | None:
    """Person confidence in [0, 1] from an ImageSegmenterResult, or None."""
    confs = getattr(result, "confidence_masks", None)
    if confs:
        # Two-class models put the person at index 1, the selfie models emit a single person mask.
        person = confs[1] if len(confs) >= 2 else confs[0]
        return np.clip(person.numpy_view().astype(np.float32), 0.0, 1.0)
    category_mask = getattr(result, "category_mask", None)
    if category_mask is None:
        return None
    mask = category_mask.numpy_view()
    if mask.ndim == 3:
        mask = mask[:, :, 0]
    return (mask > 0).astype(np.float32)
