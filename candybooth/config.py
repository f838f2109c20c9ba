from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from .gestures import FistThresholds


@dataclass(frozen=True)
class ServerConfig:
    content_root: Path
    data_dir: Path
    media_root: Path
    public_url: str
    host: str = "0.0.0.0"
    port: int = 8088

    @property
    def results_path(self) -> Path:
        return self.data_dir / "results.json"

    @property
    def questions_path(self) -> Path:
        return self.data_dir / "questions.json"

    @property
    def backgrounds_dir(self) -> Path:
        return self.content_root / "backgrounds"


@dataclass(frozen=True)
class BoothConfig:
    server_url: str
    camera_index: int = 0
    camera_open_timeout: float = 8.0
    result_id: int | None = None
    mode: str = "child"
    model_dir: Path = Path("models")
    background: str = ""
    service_logo: str = ""
    creator_logo: str = ""
    segmenter_variant: str = "landscape"
    fist: FistThresholds = field(default_factory=FistThresholds)
    window_name: str = "Candy Booth (space: capture, q: quit)"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw.isdigit() else default


def build_server_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Candy booth survey, layer compositing and download server.")
    parser.add_argument("--content-root", type=str, default=os.getenv("CANDYBOOTH_CONTENT_ROOT", "content"))
    parser.add_argument("--data-dir", type=str, default=os.getenv("CANDYBOOTH_DATA_DIR", "data"))
    parser.add_argument("--media-root", type=str, default=os.getenv("CANDYBOOTH_MEDIA_ROOT", os.path.join("data", "media")))
    parser.add_argument("--public-url", type=str, default=os.getenv("CANDYBOOTH_PUBLIC_URL", ""))
    parser.add_argument("--host", type=str, default=os.getenv("CANDYBOOTH_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=_env_int("CANDYBOOTH_PORT", 8088))
    return parser


def server_config_from_args(argv: Sequence[str] | None = None) -> ServerConfig:
    args = build_server_parser().parse_args(argv)
    public_url = args.public_url.strip() or f"http://127.0.0.1:{args.port}"
    return ServerConfig(
        content_root=Path(args.content_root),
        data_dir=Path(args.data_dir),
        media_root=Path(args.media_root),
        public_url=public_url.rstrip("/"),
        host=args.host,
        port=args.port,
    )


def build_booth_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Hand-tracking candy photo booth.")
    parser.add_argument("--server-url", type=str, default=os.getenv("CANDYBOOTH_SERVER_URL", "http://127.0.0.1:8088"))
    parser.add_argument("--camera-index", type=int, default=_env_int("CANDYBOOTH_CAMERA_INDEX", 0))
    parser.add_argument("--camera-open-timeout", type=float, default=8.0)
    parser.add_argument("--result-id", type=int, default=None, help="Skip the survey and open the camera for an existing result.")
    parser.add_argument("--mode", choices=("child", "adult"), default="child")
    parser.add_argument("--model-dir", type=str, default=os.getenv("CANDYBOOTH_MODEL_DIR", "models"))
    parser.add_argument("--background", type=str, default="", help="Background image path or URL (default: first server background).")
    parser.add_argument("--service-logo", type=str, default="")
    parser.add_argument("--creator-logo", type=str, default="")
    parser.add_argument("--segmenter-variant", choices=("landscape", "square"), default="landscape")
    parser.add_argument("--finger-curl", type=float, default=FistThresholds.finger_curl)
    parser.add_argument("--thumb-curl", type=float, default=FistThresholds.thumb_curl)
    parser.add_argument("--min-curled-fingers", type=int, default=FistThresholds.min_curled_fingers)
    return parser


def booth_config_from_args(argv: Sequence[str] | None = None) -> BoothConfig:
    args = build_booth_parser().parse_args(argv)
    return BoothConfig(
        server_url=args.server_url.rstrip("/"),
        camera_index=args.camera_index,
        camera_open_timeout=args.camera_open_timeout,
        result_id=args.result_id,
        mode=args.mode,
        model_dir=Path(args.model_dir),
        background=args.background.strip(),
        service_logo=args.service_logo.strip(),
        creator_logo=args.creator_logo.strip(),
        segmenter_variant=args.segmenter_variant,
        fist=FistThresholds(
            finger_curl=args.finger_curl,
            thumb_curl=args.thumb_curl,
            min_curled_fingers=args.min_curled_fingers,
        ),
    )
