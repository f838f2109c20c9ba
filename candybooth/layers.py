from __future__ import annotations

import hashlib
import io
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from PIL import Image

from .errors import LayerResolutionError

logger = logging.getLogger(__name__)

LAYER_ORDER: tuple[str, ...] = ("base", "whole", "upper-half", "shaft", "lower", "upper", "center")
MODES: tuple[str, ...] = ("adult", "child")


@dataclass(frozen=True)
class ResolvedLayer:
    slot: str
    answer_id: int
    path: Path


def layer_path(content_root: Path, mode: str, slot: str, answer_id: int) -> Path:
    return Path(content_root) / mode / slot / f"{answer_id}.png"


def resolve_layers(answer_ids: Sequence[int], mode: str, content_root: Path) -> list[ResolvedLayer]:
    """Fill each slot in canonical order with the first remaining answer that has a file.

    A matched answer is consumed and cannot fill a later slot. Answers that
    match nothing are left unused.
    """
    if mode not in MODES:
        raise ValueError(f"unknown mode: {mode!r}")
    remaining = list(answer_ids)
    resolved: list[ResolvedLayer] = []
    for slot in LAYER_ORDER:
        for idx, answer_id in enumerate(remaining):
            candidate = layer_path(content_root, mode, slot, answer_id)
            if candidate.is_file():
                resolved.append(ResolvedLayer(slot=slot, answer_id=answer_id, path=candidate))
                del remaining[idx]
                break
    return resolved


def composite_layers(layers: Sequence[ResolvedLayer]) -> bytes:
    if not layers:
        raise LayerResolutionError("Could not identify any image layers for these answers.")
    base_layer, *overlays = layers
    with Image.open(base_layer.path) as base_src:
        canvas = base_src.convert("RGBA")
    for layer in overlays:
        with Image.open(layer.path) as src:
            overlay = src.convert("RGBA")
        if overlay.size != canvas.size:
            logger.warning(
                "Layer %s/%s is %sx%s, base is %sx%s; resizing",
                layer.slot,
                layer.answer_id,
                overlay.width,
                overlay.height,
                canvas.width,
                canvas.height,
            )
            overlay = overlay.resize(canvas.size, Image.LANCZOS)
        canvas = Image.alpha_composite(canvas, overlay)
    out = io.BytesIO()
    canvas.save(out, format="PNG")
    return out.getvalue()


def generated_object_path(answer_ids: Sequence[int], mode: str, timestamp_ms: int) -> str:
    body = json.dumps({"answers": list(answer_ids), "mode": mode, "timestamp": int(timestamp_ms)}, separators=(",", ":"))
    digest = hashlib.sha1(body.encode("utf-8")).hexdigest()
    return f"generated/{mode}/{digest}.png"
