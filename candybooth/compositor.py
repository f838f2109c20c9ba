"""Per-frame booth composition.

Each segmentation result produces one canvas: a white card holding a
rounded content window (background, candy overlays on fists, then the
segmented person on top) and a footer band with logos and the date. Any
asset that has not loaded yet is left out or replaced by a flat fill.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

import cv2
import numpy as np
import requests

from .gestures import DEFAULT_THRESHOLDS, FistThresholds, HandLandmarks, hand_center, is_fist
from .latest import LatestValue

logger = logging.getLogger(__name__)

PAD_X = 0.05
PAD_TOP = 0.065
PAD_BOTTOM = 0.18
CORNER_RADIUS = 0.045
ASPECT_EPSILON = 0.001

OVERLAY_WIDTH = 0.18
OVERLAY_HEIGHT = 0.38
# Overlay center sits this many overlay-heights above the hand center.
OVERLAY_LIFT = 0.74

LOGO_MAX_WIDTH = 0.25
FOOTER_INSET = 0.2
DATE_FONT_RATIO = 0.35
DATE_MIN_FONT_PX = 16
DATE_COLOR = (55, 41, 31)
CARD_COLOR = (255, 255, 255)
CONTENT_FALLBACK_COLOR = (0, 0, 0)


@dataclass(frozen=True)
class FrameLayout:
    content_w: int
    content_h: int
    pad_x: int
    pad_top: int
    pad_bottom: int

    @property
    def canvas_w(self) -> int:
        return self.content_w + 2 * self.pad_x

    @property
    def canvas_h(self) -> int:
        return self.content_h + self.pad_top + self.pad_bottom

    @property
    def aspect(self) -> float:
        return self.canvas_w / self.canvas_h

    @property
    def radius(self) -> float:
        return min(self.content_w, self.content_h) * CORNER_RADIUS


def compute_layout(content_w: int, content_h: int) -> FrameLayout:
    return FrameLayout(
        content_w=content_w,
        content_h=content_h,
        pad_x=int(round(content_w * PAD_X)),
        pad_top=int(round(content_h * PAD_TOP)),
        pad_bottom=int(round(content_h * PAD_BOTTOM)),
    )


def rounded_rect_mask(width: int, height: int, radius: float) -> np.ndarray:
    """Float mask in [0, 1], 1 inside a rounded rectangle covering the whole area."""
    mask = np.zeros((height, width), dtype=np.uint8)
    r = int(round(min(radius, width / 2, height / 2)))
    if r <= 0:
        mask[:, :] = 255
        return mask.astype(np.float32) / 255.0
    cv2.rectangle(mask, (r, 0), (width - 1 - r, height - 1), 255, -1)
    cv2.rectangle(mask, (0, r), (width - 1, height - 1 - r), 255, -1)
    for cx, cy in ((r, r), (width - 1 - r, r), (r, height - 1 - r), (width - 1 - r, height - 1 - r)):
        cv2.circle(mask, (cx, cy), r, 255, -1, cv2.LINE_AA)
    return mask.astype(np.float32) / 255.0


def blend_image(canvas: np.ndarray, image: np.ndarray, x: int, y: int) -> None:
    """Draw ``image`` (gray, BGR or BGRA) with its top-left at (x, y), clipped to ``canvas``."""
    ih, iw = image.shape[:2]
    ch, cw = canvas.shape[:2]
    x0, y0 = max(x, 0), max(y, 0)
    x1, y1 = min(x + iw, cw), min(y + ih, ch)
    if x1 <= x0 or y1 <= y0:
        return
    src = image[y0 - y : y1 - y, x0 - x : x1 - x]
    dst = canvas[y0:y1, x0:x1]
    if src.ndim < 3:
        dst[:] = cv2.cvtColor(src, cv2.COLOR_GRAY2BGR)
    elif src.shape[2] == 4:
        alpha = (src[:, :, 3].astype(np.float32) / 255.0)[:, :, None]
        mixed = (alpha * src[:, :, :3].astype(np.float32)) + ((1.0 - alpha) * dst.astype(np.float32))
        dst[:] = mixed.astype(np.uint8)
    else:
        dst[:] = src[:, :, :3]


def fit_scale(image_w: int, image_h: int, max_w: float, max_h: float) -> float:
    if image_w <= 0 or image_h <= 0:
        return 0.0
    return min(max_w / image_w, max_h / image_h, 1.0)


def person_alpha(mask: np.ndarray | None, width: int, height: int) -> np.ndarray:
    if mask is None:
        return np.ones((height, width, 1), dtype=np.float32)
    alpha = np.asarray(mask, dtype=np.float32)
    if alpha.ndim == 3:
        alpha = alpha[:, :, 0]
    if alpha.shape != (height, width):
        alpha = cv2.resize(alpha, (width, height), interpolation=cv2.INTER_LINEAR)
    return np.clip(alpha, 0.0, 1.0)[:, :, None]


def _decode_image(raw: bytes) -> np.ndarray | None:
    return cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_UNCHANGED)


class AssetSlot:
    """One decoded image that loads in the background and may never become ready."""

    def __init__(self, name: str, source: str = "", timeout_seconds: float = 10.0) -> None:
        self.name = name
        self.source = source
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._image: np.ndarray | None = None
        self._error: str | None = None

    @property
    def image(self) -> np.ndarray | None:
        with self._lock:
            return self._image

    @property
    def ready(self) -> bool:
        return self.image is not None

    @property
    def error(self) -> str | None:
        with self._lock:
            return self._error

    def set_image(self, image: np.ndarray | None) -> None:
        with self._lock:
            self._image = image
            self._error = None if image is not None else self._error

    def load(self) -> bool:
        source = self.source
        if not source:
            return False
        try:
            if source.startswith(("http://", "https://")):
                resp = requests.get(source, timeout=self.timeout_seconds)
                resp.raise_for_status()
                image = _decode_image(resp.content)
            else:
                image = cv2.imread(str(Path(source)), cv2.IMREAD_UNCHANGED)
        except (requests.RequestException, OSError) as exc:
            image = None
            reason = str(exc)
        else:
            reason = "not a decodable image"
        with self._lock:
            if image is None:
                self._error = f"Could not load {self.name} image ({reason})."
                logger.warning("Asset %s from %s failed: %s", self.name, source, reason)
                return False
            self._image = image
            self._error = None
        logger.info("Asset %s ready (%sx%s)", self.name, image.shape[1], image.shape[0])
        return True

    def load_async(self) -> threading.Thread:
        thread = threading.Thread(target=self.load, name=f"asset-{self.name}", daemon=True)
        thread.start()
        return thread


class AssetLibrary:
    def __init__(self, overlay: str = "", background: str = "", service_logo: str = "", creator_logo: str = "") -> None:
        self.overlay = AssetSlot("candy", overlay)
        self.background = AssetSlot("background", background)
        self.service_logo = AssetSlot("service logo", service_logo)
        self.creator_logo = AssetSlot("creator logo", creator_logo)

    @property
    def slots(self) -> tuple[AssetSlot, ...]:
        return (self.overlay, self.background, self.service_logo, self.creator_logo)

    def load_all_async(self) -> list[threading.Thread]:
        return [slot.load_async() for slot in self.slots if slot.source]

    def errors(self) -> list[str]:
        return [slot.error for slot in self.slots if slot.error]


class FrameCompositor:
    def __init__(
        self,
        assets: AssetLibrary,
        hands: LatestValue[list[list]],
        thresholds: FistThresholds = DEFAULT_THRESHOLDS,
        date_label: str | None = None,
        on_aspect_change: Callable[[float], None] | None = None,
    ) -> None:
        self.assets = assets
        self.hands = hands
        self.thresholds = thresholds
        self.date_label = date_label or time.strftime("%Y/%m/%d")
        self.on_aspect_change = on_aspect_change
        self.canvas: LatestValue[np.ndarray | None] = LatestValue(None)
        self.aspect_ratio = 16 / 9
        self._clip_cache: tuple[tuple[int, int], np.ndarray] | None = None
        self._resize_cache: dict[str, tuple[int, tuple[int, int], np.ndarray]] = {}

    def handle_segmentation(self, frame_bgr: np.ndarray, mask: np.ndarray | None, timestamp_ms: int = 0) -> None:
        canvas = self.compose(frame_bgr, mask)
        if canvas is not None:
            self.canvas.set(canvas)

    def _clip_mask(self, layout: FrameLayout) -> np.ndarray:
        key = (layout.content_w, layout.content_h)
        if self._clip_cache is None or self._clip_cache[0] != key:
            mask = rounded_rect_mask(layout.content_w, layout.content_h, layout.radius)[:, :, None]
            self._clip_cache = (key, mask)
        return self._clip_cache[1]

    def _resized(self, slot: str, image: np.ndarray, size: tuple[int, int]) -> np.ndarray:
        cached = self._resize_cache.get(slot)
        if cached is not None and cached[0] == id(image) and cached[1] == size:
            return cached[2]
        resized = cv2.resize(image, size, interpolation=cv2.INTER_AREA)
        self._resize_cache[slot] = (id(image), size, resized)
        return resized

    def _publish_aspect(self, layout: FrameLayout) -> None:
        aspect = layout.aspect
        if np.isfinite(aspect) and abs(self.aspect_ratio - aspect) > ASPECT_EPSILON:
            self.aspect_ratio = aspect
            if self.on_aspect_change is not None:
                self.on_aspect_change(aspect)

    def compose(self, frame_bgr: np.ndarray, mask: np.ndarray | None) -> np.ndarray | None:
        if frame_bgr is None or frame_bgr.ndim != 3 or frame_bgr.shape[0] == 0 or frame_bgr.shape[1] == 0:
            return None
        frame = frame_bgr[:, :, :3]
        h, w = frame.shape[:2]
        layout = compute_layout(w, h)
        self._publish_aspect(layout)

        canvas = np.full((layout.canvas_h, layout.canvas_w, 3), CARD_COLOR, dtype=np.uint8)
        content = self._draw_background(layout)
        self._draw_overlays(content, self.hands.get(), layout)

        # The live person goes over the candy so a hand holding it stays in front.
        alpha = person_alpha(mask, w, h)
        content = (alpha * frame.astype(np.float32)) + ((1.0 - alpha) * content.astype(np.float32))

        clip = self._clip_mask(layout)
        region = canvas[layout.pad_top : layout.pad_top + h, layout.pad_x : layout.pad_x + w]
        region[:] = ((clip * content) + ((1.0 - clip) * region.astype(np.float32))).astype(np.uint8)

        self._draw_footer(canvas, layout)
        return canvas

    def _draw_background(self, layout: FrameLayout) -> np.ndarray:
        size = (layout.content_w, layout.content_h)
        background = self.assets.background.image
        if background is None:
            return np.full((layout.content_h, layout.content_w, 3), CONTENT_FALLBACK_COLOR, dtype=np.uint8)
        content = np.full((layout.content_h, layout.content_w, 3), CONTENT_FALLBACK_COLOR, dtype=np.uint8)
        blend_image(content, self._resized("background", background, size), 0, 0)
        return content

    def _draw_overlays(self, content: np.ndarray, hands: Sequence[HandLandmarks], layout: FrameLayout) -> int:
        overlay = self.assets.overlay.image
        if overlay is None or not hands:
            return 0
        ow = max(int(round(layout.content_w * OVERLAY_WIDTH)), 1)
        oh = max(int(round(layout.content_h * OVERLAY_HEIGHT)), 1)
        sized = self._resized("overlay", overlay, (ow, oh))
        drawn = 0
        for landmarks in hands:
            if not is_fist(landmarks, self.thresholds):
                continue
            cx, cy = hand_center(landmarks)
            center_x = cx * layout.content_w
            center_y = cy * layout.content_h - oh * OVERLAY_LIFT
            blend_image(content, sized, int(round(center_x - ow / 2)), int(round(center_y - oh / 2)))
            drawn += 1
        return drawn

    def _draw_footer(self, canvas: np.ndarray, layout: FrameLayout) -> None:
        band_top = layout.pad_top + layout.content_h
        band_h = max(layout.canvas_h - band_top, 0)
        if band_h <= 0:
            return
        inset = int(round(band_h * FOOTER_INSET))
        info_top = band_top + inset
        info_bottom = layout.canvas_h - inset
        info_h = max(info_bottom - info_top, 1)
        left = layout.pad_x
        right = layout.pad_x + layout.content_w
        max_logo_w = layout.content_w * LOGO_MAX_WIDTH

        service = self.assets.service_logo.image
        if service is not None:
            scale = fit_scale(service.shape[1], service.shape[0], max_logo_w, info_h)
            dw, dh = int(service.shape[1] * scale), int(service.shape[0] * scale)
            if dw > 0 and dh > 0:
                logo = self._resized("service_logo", service, (dw, dh))
                blend_image(canvas, logo, left, int(info_top + (info_h - dh) / 2))

        font_px = max(int(round(info_h * DATE_FONT_RATIO)), DATE_MIN_FONT_PX)
        font = cv2.FONT_HERSHEY_SIMPLEX
        (_, base_h), _ = cv2.getTextSize(self.date_label, font, 1.0, 2)
        font_scale = font_px / max(base_h, 1)
        thickness = max(1, int(round(font_scale * 2)))
        (text_w, text_h), _ = cv2.getTextSize(self.date_label, font, font_scale, thickness)
        cv2.putText(
            canvas,
            self.date_label,
            (right - text_w, info_top + text_h),
            font,
            font_scale,
            DATE_COLOR,
            thickness,
            cv2.LINE_AA,
        )

        creator = self.assets.creator_logo.image
        if creator is not None:
            spacing = int(round(info_h * 0.12))
            available = max(info_bottom - (info_top + font_px + spacing), 1)
            scale = fit_scale(creator.shape[1], creator.shape[0], max_logo_w, available)
            dw, dh = int(creator.shape[1] * scale), int(creator.shape[0] * scale)
            if dw > 0 and dh > 0:
                logo = self._resized("creator_logo", creator, (dw, dh))
                blend_image(canvas, logo, right - dw, info_bottom - dh)
