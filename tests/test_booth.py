import time

import numpy as np
import pytest

from candybooth.booth import KEY_ESC, KEY_SPACE, BoothApp, BoothSession, render_status_card, run_survey
from candybooth.capture import CaptureState
from candybooth.config import BoothConfig
from candybooth.detectors import SessionState
from candybooth.errors import ApiError
from candybooth.models import ModelCache


class FakeClient:
    base_url = "http://booth.test"

    def __init__(self, questions=None, questions_error=None, submit_errors=()):
        self.questions = questions or []
        self.questions_error = questions_error
        self.submit_errors = list(submit_errors)
        self.submitted = None
        self.submit_calls = 0
        self.uploads = []

    def fetch_questions(self, mode):
        if self.questions_error:
            raise self.questions_error
        return self.questions

    def create_result(self):
        return 5

    def submit_answers(self, result_id, answers, mode, questions=None):
        self.submit_calls += 1
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submitted = (result_id, answers, mode)
        return {"success": True, "resultId": result_id, "candyUrl": "http://booth.test/candy.png", "duplicateRank": 3, "previousCount": 2}

    def upload_photo(self, result_id, png):
        self.uploads.append((result_id, png))
        return "http://booth.test/photo.png"

    def download_url(self, result_id):
        return f"{self.base_url}/download/{result_id}"


QUESTIONS = [
    {"id": 1, "question": "Season?", "options": [{"id": 10, "text": "Spring"}, {"id": 11, "text": "Summer"}]},
    {"id": 2, "question": "Team?", "options": [{"id": 7, "text": "Bread"}]},
]


def test_run_survey_collects_answers_and_reports_rank():
    client = FakeClient(QUESTIONS)
    replies = iter(["9", "two", "2", "1"])
    printed = []
    outcome = run_survey(client, "child", lambda prompt: next(replies), printed.append)
    assert client.submitted == (5, [11, 7], "child")
    assert outcome.result_id == 5
    assert outcome.candy_url == "http://booth.test/candy.png"
    assert (outcome.duplicate_rank, outcome.previous_count) == (3, 2)
    assert any("2 guest(s)" in line for line in printed)


def test_run_survey_reports_missing_questions():
    printed = []
    client = FakeClient(questions_error=ApiError("No questions found", status=404))
    assert run_survey(client, "adult", lambda prompt: "", printed.append) is None
    assert printed == ["No questions are available right now."]
    assert client.submitted is None


def test_run_survey_lets_guest_quit_after_server_error():
    printed = []
    client = FakeClient(questions_error=ApiError("down", status=500))
    assert run_survey(client, "child", lambda prompt: "q", printed.append) is None
    assert printed == ["Something went wrong: down"]


@pytest.mark.parametrize("status", [422, 500, None])
def test_failed_submit_is_reported_and_retried_with_same_answers(status):
    client = FakeClient(QUESTIONS, submit_errors=[ApiError("Could not identify any image layers.", status=status)])
    replies = iter(["2", "1", ""])
    printed = []
    outcome = run_survey(client, "child", lambda prompt: next(replies), printed.append)
    assert client.submit_calls == 2
    assert client.submitted == (5, [11, 7], "child")
    assert outcome.candy_url == "http://booth.test/candy.png"
    assert "Something went wrong: Could not identify any image layers." in printed


def test_failed_submit_can_be_abandoned():
    client = FakeClient(QUESTIONS, submit_errors=[ApiError("server error", status=500)])
    replies = iter(["1", "1", "q"])
    assert run_survey(client, "child", lambda prompt: next(replies), lambda line: None) is None
    assert client.submit_calls == 1


def test_status_card_size():
    card = render_status_card("Loading\nplease wait", size=(320, 180))
    assert card.shape == (180, 320, 3)


class FakeDetector:
    def __init__(self, model_path, callback):
        self.closed = False

    def detect_async(self, image, timestamp_ms):
        pass

    def close(self):
        self.closed = True


@pytest.fixture
def session(tmp_path):
    config = BoothConfig(server_url="http://booth.test", service_logo="", creator_logo="")
    booth_session = BoothSession(
        config,
        FakeClient(),
        result_id=5,
        candy_url=None,
        model_cache=ModelCache(tmp_path, fetch=lambda url, path: path.write_bytes(b"m")),
        camera_opener=lambda: None,
        hand_factory=FakeDetector,
        segmenter_factory=FakeDetector,
        image_factory=lambda rgb: rgb,
    )
    yield booth_session
    booth_session.close()


def test_session_uses_fallback_overlay_without_candy(session):
    assert session.assets.overlay.source.endswith("/assets/overlay/fallback-candy.png")


def test_session_shows_status_until_first_canvas(session):
    frame = session.render()
    assert frame.shape == (720, 1280, 3)
    session.compositor.canvas.set(np.zeros((50, 80, 3), dtype=np.uint8))
    assert session.render().shape == (50, 80, 3)


def test_session_failure_is_shown_not_raised(session):
    session.open()
    assert session.detectors.wait_ready(5)
    assert session.detectors.state == SessionState.FAILED
    assert session.render().shape == (720, 1280, 3)


def test_keys_drive_capture_flow(session):
    app = BoothApp(session.config, client=session.client)
    session.compositor.canvas.set(np.full((50, 80, 3), 40, dtype=np.uint8))

    assert app._handle_key(session, KEY_SPACE)
    assert session.capture.state == CaptureState.REVIEW
    assert app._handle_key(session, ord("n"))
    assert session.capture.state == CaptureState.LIVE

    app._handle_key(session, KEY_SPACE)
    assert app._handle_key(session, ord("y"))
    for _ in range(250):
        if session.capture.state == CaptureState.DONE and session.qr_tile is not None:
            break
        time.sleep(0.02)
    assert session.capture.state == CaptureState.DONE
    assert session.client.uploads[0][0] == 5
    assert session.render().shape == (50, 80, 3)

    assert not app._handle_key(session, ord("q"))
    assert not app._handle_key(session, KEY_ESC)


def test_capture_error_is_shown_inline(session):
    app = BoothApp(session.config, client=session.client)
    assert app._handle_key(session, KEY_SPACE)
    assert session.capture.state == CaptureState.LIVE
    assert "Nothing to capture" in session.capture.message


def test_close_is_idempotent(session):
    session.close()
    session.close()
    assert session.detectors.state == SessionState.CLOSED


def test_asset_failures_are_shown_in_live_hint(tmp_path):
    config = BoothConfig(server_url="http://booth.test")
    booth_session = BoothSession(
        config,
        FakeClient(),
        result_id=5,
        candy_url=str(tmp_path / "missing-candy.png"),
        background=str(tmp_path / "missing-bg.png"),
        model_cache=ModelCache(tmp_path, fetch=lambda url, path: path.write_bytes(b"m")),
        camera_opener=lambda: None,
    )
    try:
        assert booth_session.live_hint().startswith("Make a fist")
        assert booth_session.assets.overlay.load() is False
        assert booth_session.assets.background.load() is False
        hint = booth_session.live_hint()
        assert "Could not load candy image" in hint
        assert "Could not load background image" in hint
        booth_session.compositor.canvas.set(np.zeros((50, 80, 3), dtype=np.uint8))
        assert booth_session.render().shape == (50, 80, 3)

        booth_session.capture.message = "Nothing to capture yet."
        assert booth_session.live_hint() == "Nothing to capture yet."
    finally:
        booth_session.close()
