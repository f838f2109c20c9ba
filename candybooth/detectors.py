"""Camera and detector lifecycle for one booth session.

A session owns one camera capture and two MediaPipe LIVE_STREAM detectors
(hand landmarker and selfie segmenter). They are acquired together on a
setup thread and released together by ``close()``, which may run at any
point, including while setup is still waiting on the camera.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from enum import Enum
from typing import Any, Callable

import cv2
import numpy as np

from .errors import BoothError, CameraUnavailableError, DetectorLoadError
from .gestures import Landmark, landmarks_from_result
from .models import (
    HAND_LANDMARKER_URL,
    SELFIE_SEGMENTER_URLS,
    ModelCache,
    create_hand_landmarker,
    create_selfie_segmenter,
    person_mask_from_result,
    to_mp_image,
)

logger = logging.getLogger(__name__)

HandsCallback = Callable[[list[list[Landmark]]], None]
SegmentationCallback = Callable[[np.ndarray, "np.ndarray | None", int], None]


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    CLOSED = "closed"


def open_camera_with_retry(camera_index: int, timeout_seconds: float) -> cv2.VideoCapture | None:
    cam: cv2.VideoCapture | None = None
    deadline = time.time() + max(timeout_seconds, 0.5)
    backends: list[int | None]
    if sys.platform == "darwin":
        backends = [cv2.CAP_AVFOUNDATION, None]
    elif sys.platform.startswith("win"):
        backends = [cv2.CAP_DSHOW, None]
    else:
        backends = [None]

    while time.time() < deadline:
        for backend in backends:
            cam = cv2.VideoCapture(camera_index) if backend is None else cv2.VideoCapture(camera_index, backend)
            if cam.isOpened():
                cam.set(cv2.CAP_PROP_FRAME_WIDTH, 1280)
                cam.set(cv2.CAP_PROP_FRAME_HEIGHT, 720)
                return cam
            cam.release()
        time.sleep(0.35)
    return None


def _release_quietly(name: str, release: Callable[[], Any]) -> None:
    try:
        release()
    except Exception:
        logger.exception("Failed to release %s", name)


class DetectorSession:
    def __init__(
        self,
        camera_opener: Callable[[], Any],
        model_cache: ModelCache,
        on_hands: HandsCallback,
        on_segmentation: SegmentationCallback,
        segmenter_variant: str = "landscape",
        hand_factory: Callable[[Any, Callable], Any] = create_hand_landmarker,
        segmenter_factory: Callable[[Any, Callable], Any] = create_selfie_segmenter,
        image_factory: Callable[[np.ndarray], Any] = to_mp_image,
    ) -> None:
        if segmenter_variant not in SELFIE_SEGMENTER_URLS:
            raise ValueError(f"unknown segmenter variant: {segmenter_variant!r}")
        self._camera_opener = camera_opener
        self._models = model_cache
        self._on_hands = on_hands
        self._on_segmentation = on_segmentation
        self._segmenter_variant = segmenter_variant
        self._hand_factory = hand_factory
        self._segmenter_factory = segmenter_factory
        self._image_factory = image_factory

        self._lock = threading.Lock()
        self._active = False
        self._state = SessionState.IDLE
        self._error: BoothError | None = None
        self._camera: Any = None
        self._hands: Any = None
        self._segmenter: Any = None
        self._last_timestamp_ms = 0
        self._ready = threading.Event()
        self._setup_thread: threading.Thread | None = None

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def error(self) -> BoothError | None:
        with self._lock:
            return self._error

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        with self._lock:
            if self._state != SessionState.IDLE:
                return
            self._state = SessionState.STARTING
            self._active = True
        self._setup_thread = threading.Thread(target=self._setup, name="detector-setup", daemon=True)
        self._setup_thread.start()

    def wait_ready(self, timeout: float | None = None) -> bool:
        """Block until setup finished (successfully or not)."""
        return self._ready.wait(timeout)

    def join(self, timeout: float | None = None) -> None:
        if self._setup_thread is not None:
            self._setup_thread.join(timeout)

    def _adopt(self, slot: str, resource: Any, release: Callable[[], Any]) -> bool:
        with self._lock:
            if self._active:
                setattr(self, slot, resource)
                return True
        logger.info("Session closed during setup; releasing %s", slot.strip("_"))
        _release_quietly(slot.strip("_"), release)
        return False

    def _setup(self) -> None:
        try:
            hand_model = self._models.get("hand_landmarker.task", HAND_LANDMARKER_URL)
            seg_url = SELFIE_SEGMENTER_URLS[self._segmenter_variant]
            seg_model = self._models.get(seg_url.rsplit("/", 1)[-1], seg_url)
            if not self._active:
                return

            try:
                camera = self._camera_opener()
            except Exception as exc:
                raise CameraUnavailableError(f"Could not access the camera: {exc}") from exc
            if camera is None:
                raise CameraUnavailableError("Could not access the camera. Check that it is connected and permitted.")
            if not self._adopt("_camera", camera, camera.release):
                return

            try:
                hands = self._hand_factory(hand_model, self._handle_hands)
            except Exception as exc:
                raise DetectorLoadError(f"Could not start hand tracking: {exc}") from exc
            if not self._adopt("_hands", hands, hands.close):
                return

            try:
                segmenter = self._segmenter_factory(seg_model, self._handle_segmentation)
            except Exception as exc:
                raise DetectorLoadError(f"Could not start body segmentation: {exc}") from exc
            if not self._adopt("_segmenter", segmenter, segmenter.close):
                return

            with self._lock:
                if self._active:
                    self._state = SessionState.RUNNING
            logger.info("Detector session running (segmenter=%s)", self._segmenter_variant)
        except BoothError as exc:
            if not self._active:
                logger.info("Setup error after session close ignored: %s", exc)
                return
            logger.error("Detector session setup failed: %s", exc)
            with self._lock:
                self._error = exc
            self.close(final_state=SessionState.FAILED)
        finally:
            self._ready.set()

    def _handle_hands(self, result: Any, output_image: Any, timestamp_ms: int) -> None:
        if not self._active:
            return
        try:
            self._on_hands(landmarks_from_result(result))
        except Exception:
            logger.exception("Hand result handler failed")

    def _handle_segmentation(self, result: Any, output_image: Any, timestamp_ms: int) -> None:
        if not self._active:
            return
        try:
            frame_bgr = cv2.cvtColor(np.asarray(output_image.numpy_view()), cv2.COLOR_RGB2BGR)
            self._on_segmentation(frame_bgr, person_mask_from_result(result), int(timestamp_ms))
        except Exception:
            logger.exception("Segmentation result handler failed")

    def _next_timestamp_ms(self) -> int:
        now_ms = int(time.monotonic() * 1000)
        if now_ms <= self._last_timestamp_ms:
            now_ms = self._last_timestamp_ms + 1
        self._last_timestamp_ms = now_ms
        return now_ms

    def read_frame(self) -> np.ndarray | None:
        with self._lock:
            camera = self._camera if self._active else None
        if camera is None:
            return None
        ok, frame = camera.read()
        return frame if ok else None

    def push_frame(self, frame_bgr: np.ndarray) -> bool:
        """Hand one frame to both detectors. Results arrive later on their callbacks."""
        with self._lock:
            if not self._active or self._state != SessionState.RUNNING:
                return False
            hands, segmenter = self._hands, self._segmenter
        timestamp_ms = self._next_timestamp_ms()
        image = self._image_factory(cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB))
        for name, detector in (("hands", hands), ("segmenter", segmenter)):
            try:
                detector.detect_async(image, timestamp_ms)
            except Exception as exc:
                logger.warning("Failed to push frame to %s: %s", name, exc)
        return True

    def close(self, final_state: SessionState = SessionState.CLOSED) -> None:
        with self._lock:
            self._active = False
            if self._state != SessionState.FAILED:
                self._state = final_state
            hands, segmenter, camera = self._hands, self._segmenter, self._camera
            self._hands = self._segmenter = self._camera = None
        if hands is not None:
            _release_quietly("hand landmarker", hands.close)
        if segmenter is not None:
            _release_quietly("selfie segmenter", segmenter.close)
        if camera is not None:
            _release_quietly("camera", camera.release)
