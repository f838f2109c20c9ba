from __future__ import annotations

import shutil
from pathlib import Path

import pytest
from PIL import Image

from candybooth.config import ServerConfig
from candybooth.gestures import Landmark
from candybooth.server import create_app

REPO_ROOT = Path(__file__).resolve().parents[1]

FINGER_BASE_X = (0.42, 0.48, 0.54, 0.60)


def make_hand(curled: bool) -> list[Landmark]:
    """21 landmarks of an upright right hand, either open or balled into a fist."""
    points = [Landmark(0.5, 0.8)]
    if curled:
        points += [Landmark(0.44, 0.74), Landmark(0.38, 0.65), Landmark(0.38, 0.63), Landmark(0.40, 0.62)]
    else:
        points += [Landmark(0.42, 0.72), Landmark(0.38, 0.65), Landmark(0.34, 0.58), Landmark(0.30, 0.52)]
    for x in FINGER_BASE_X:
        if curled:
            points += [Landmark(x, 0.60), Landmark(x, 0.55), Landmark(x, 0.57), Landmark(x, 0.58)]
        else:
            points += [Landmark(x, 0.60), Landmark(x, 0.50), Landmark(x, 0.42), Landmark(x, 0.35)]
    return points


@pytest.fixture
def open_hand() -> list[Landmark]:
    return make_hand(curled=False)


@pytest.fixture
def fist_hand() -> list[Landmark]:
    return make_hand(curled=True)


def _solid(path: Path, size: tuple[int, int], color: tuple[int, int, int, int]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGBA", size, color).save(path)


@pytest.fixture
def content_root(tmp_path: Path) -> Path:
    root = tmp_path / "content"
    _solid(root / "child" / "base" / "3.png", (64, 64), (255, 0, 0, 255))
    _solid(root / "child" / "whole" / "3.png", (64, 64), (0, 255, 0, 255))
    _solid(root / "child" / "upper" / "11.png", (64, 64), (0, 0, 0, 0))

    shaft = Image.new("RGBA", (64, 64), (0, 0, 0, 0))
    shaft.paste((0, 0, 255, 255), (24, 24, 40, 40))
    (root / "child" / "shaft").mkdir(parents=True)
    shaft.save(root / "child" / "shaft" / "27.png")

    _solid(root / "adult" / "base" / "30.png", (32, 32), (10, 20, 30, 255))
    _solid(root / "backgrounds" / "bg10.png", (16, 9), (0, 0, 0, 255))
    _solid(root / "backgrounds" / "bg2.png", (16, 9), (0, 0, 0, 255))
    (root / "backgrounds" / "notes.txt").write_text("not an image", encoding="utf-8")
    return root


@pytest.fixture
def server_config(tmp_path: Path, content_root: Path) -> ServerConfig:
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    shutil.copy(REPO_ROOT / "data" / "questions.json", data_dir / "questions.json")
    return ServerConfig(
        content_root=content_root,
        data_dir=data_dir,
        media_root=tmp_path / "media",
        public_url="http://booth.test",
    )


@pytest.fixture
def app(server_config: ServerConfig):
    flask_app = create_app(server_config, clock=lambda: 1_700_000_000.0)
    flask_app.config.update(TESTING=True)
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
