"""Fist classification and hand anchoring on MediaPipe hand landmarks.

Landmarks are in MediaPipe's normalized image space: x and y in [0, 1]
relative to the frame, z relative depth. A hand is 21 landmarks with fixed
anatomical indices.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Sequence

HAND_LANDMARK_COUNT = 21

WRIST = 0
THUMB_MCP = 2
THUMB_TIP = 4

# (tip, pip) for index, middle, ring, pinky.
FINGER_PAIRS: tuple[tuple[int, int], ...] = ((8, 6), (12, 10), (16, 14), (20, 18))

# Wrist plus the four finger-base knuckles.
PALM_ANCHORS: tuple[int, ...] = (0, 5, 9, 13, 17)


@dataclass(frozen=True)
class Landmark:
    x: float
    y: float
    z: float = 0.0
    visibility: float | None = None


HandLandmarks = Sequence[Landmark]


@dataclass(frozen=True)
class FistThresholds:
    """Empirical curl thresholds in normalized landmark units."""

    finger_curl: float = 0.07
    thumb_curl: float = 0.08
    min_curled_fingers: int = 3


DEFAULT_THRESHOLDS = FistThresholds()


def _distance_2d(a: Landmark, b: Landmark) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)


def curled_finger_count(landmarks: HandLandmarks, finger_curl: float = DEFAULT_THRESHOLDS.finger_curl) -> int:
    return sum(
        1 for tip, pip in FINGER_PAIRS if _distance_2d(landmarks[tip], landmarks[pip]) < finger_curl
    )


def is_fist(landmarks: HandLandmarks, thresholds: FistThresholds = DEFAULT_THRESHOLDS) -> bool:
    if len(landmarks) < HAND_LANDMARK_COUNT:
        return False
    curled = curled_finger_count(landmarks, thresholds.finger_curl)
    thumb_curled = _distance_2d(landmarks[THUMB_TIP], landmarks[THUMB_MCP]) < thresholds.thumb_curl
    return curled >= thresholds.min_curled_fingers and thumb_curled


def hand_center(landmarks: HandLandmarks) -> tuple[float, float]:
    xs = [landmarks[i].x for i in PALM_ANCHORS]
    ys = [landmarks[i].y for i in PALM_ANCHORS]
    return sum(xs) / len(PALM_ANCHORS), sum(ys) / len(PALM_ANCHORS)


def landmarks_from_result(result: Any) -> list[list[Landmark]]:
    """Convert a MediaPipe HandLandmarkerResult into plain landmark lists."""
    hands: list[list[Landmark]] = []
    for raw_hand in getattr(result, "hand_landmarks", None) or []:
        hand: list[Landmark] = []
        for lm in raw_hand:
            visibility = getattr(lm, "visibility", None)
            hand.append(
                Landmark(
                    x=float(lm.x),
                    y=float(lm.y),
                    z=float(lm.z or 0.0),
                    visibility=float(visibility) if visibility is not None else None,
                )
            )
        hands.append(hand)
    return hands
