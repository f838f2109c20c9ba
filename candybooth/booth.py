from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

import cv2
import numpy as np

from .api_client import BoothApiClient
from .capture import CaptureFlow, CaptureState
from .compositor import AssetLibrary, FrameCompositor, blend_image
from .config import BoothConfig, booth_config_from_args
from .detectors import DetectorSession, SessionState, open_camera_with_retry
from .errors import ApiError, BoothError, CaptureError
from .gestures import Landmark
from .latest import LatestValue
from .models import ModelCache, shared_model_cache
from .qr import make_qr_tile

logger = logging.getLogger(__name__)

STATUS_CARD_SIZE = (1280, 720)
FALLBACK_OVERLAY_PATH = "/assets/overlay/fallback-candy.png"
KEY_ESC = 27
KEY_SPACE = 32


@dataclass
class SurveyOutcome:
    result_id: int
    candy_url: str | None
    duplicate_rank: int = 1
    previous_count: int = 0


def _ask_choice(question: dict, input_fn: Callable[[str], str], output_fn: Callable[[str], Any]) -> int:
    options = question.get("options") or []
    output_fn("")
    output_fn(question.get("question", ""))
    for idx, option in enumerate(options, start=1):
        output_fn(f"  {idx}. {option.get('text', '')}")
    while True:
        raw = input_fn(f"Choose 1-{len(options)}: ").strip()
        if raw.isdigit() and 1 <= int(raw) <= len(options):
            return int(options[int(raw) - 1]["id"])
        output_fn("Please enter one of the listed numbers.")


def _retry_on_api_error(
    action: Callable[[], Any],
    input_fn: Callable[[str], str],
    output_fn: Callable[[str], Any],
) -> Any | None:
    """Run ``action`` until it succeeds or the guest gives up. Returns None when they quit."""
    while True:
        try:
            return action()
        except ApiError as exc:
            logger.warning("Survey request failed (%s): %s", exc.status, exc.message)
            output_fn(f"Something went wrong: {exc.message}")
            if input_fn("Press Enter to try again, or q to quit: ").strip().lower() == "q":
                return None


def run_survey(
    client: BoothApiClient,
    mode: str,
    input_fn: Callable[[str], str] = input,
    output_fn: Callable[[str], Any] = print,
) -> SurveyOutcome | None:
    """Ask the mode's questions in the terminal and submit the answers.

    A failed request is reported and can be retried; answers already given
    are kept and resubmitted as they are.
    """

    def fetch() -> list[dict]:
        try:
            return client.fetch_questions(mode)
        except ApiError as exc:
            if exc.status == 404:
                return []
            raise

    questions = _retry_on_api_error(fetch, input_fn, output_fn)
    if questions is None:
        return None
    questions = [q for q in questions if q.get("options")]
    if not questions:
        output_fn("No questions are available right now.")
        return None

    result_id = _retry_on_api_error(client.create_result, input_fn, output_fn)
    if result_id is None:
        return None
    answers = [_ask_choice(question, input_fn, output_fn) for question in questions]
    response = _retry_on_api_error(
        lambda: client.submit_answers(result_id, answers, mode, questions), input_fn, output_fn
    )
    if response is None:
        return None
    outcome = SurveyOutcome(
        result_id=result_id,
        candy_url=response.get("candyUrl"),
        duplicate_rank=int(response.get("duplicateRank", 1)),
        previous_count=int(response.get("previousCount", 0)),
    )
    output_fn("")
    if outcome.previous_count:
        output_fn(f"Your candy is number {outcome.duplicate_rank}: {outcome.previous_count} guest(s) made the same one before you.")
    else:
        output_fn("Your candy is one of a kind so far!")
    return outcome


def render_status_card(message: str, size: tuple[int, int] = STATUS_CARD_SIZE) -> np.ndarray:
    w, h = size
    card = np.full((h, w, 3), (36, 28, 24), dtype=np.uint8)
    lines = [line for line in message.splitlines() if line.strip()] or [""]
    y = h // 2 - (len(lines) - 1) * 22
    for line in lines:
        (text_w, _), _ = cv2.getTextSize(line, cv2.FONT_HERSHEY_SIMPLEX, 0.9, 2)
        cv2.putText(card, line, ((w - text_w) // 2, y), cv2.FONT_HERSHEY_SIMPLEX, 0.9, (240, 240, 245), 2, cv2.LINE_AA)
        y += 44
    return card


def _draw_hint(canvas: np.ndarray, text: str, color: tuple[int, int, int] = (30, 30, 38)) -> None:
    h, w = canvas.shape[:2]
    cv2.rectangle(canvas, (0, h - 40), (w, h), color, -1)
    cv2.putText(canvas, text, (14, h - 14), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (235, 238, 250), 1, cv2.LINE_AA)


class BoothSession:
    """Camera, detectors, assets, compositor and capture flow for one guest."""

    def __init__(
        self,
        config: BoothConfig,
        client: BoothApiClient,
        result_id: int,
        candy_url: str | None,
        background: str = "",
        model_cache: ModelCache | None = None,
        **detector_options: Any,
    ) -> None:
        self.config = config
        self.client = client
        self.result_id = result_id
        self.hands: LatestValue[list[list[Landmark]]] = LatestValue([])
        self.assets = AssetLibrary(
            overlay=candy_url or f"{client.base_url}{FALLBACK_OVERLAY_PATH}",
            background=background,
            service_logo=config.service_logo,
            creator_logo=config.creator_logo,
        )
        self.compositor = FrameCompositor(
            self.assets,
            self.hands,
            thresholds=config.fist,
            on_aspect_change=lambda aspect: logger.info("Output aspect ratio now %.3f", aspect),
        )
        detector_options.setdefault(
            "camera_opener",
            lambda: open_camera_with_retry(config.camera_index, config.camera_open_timeout),
        )
        self.detectors = DetectorSession(
            model_cache=model_cache or shared_model_cache(config.model_dir),
            on_hands=self.hands.set,
            on_segmentation=self.compositor.handle_segmentation,
            segmenter_variant=config.segmenter_variant,
            **detector_options,
        )
        self.capture = CaptureFlow(self.compositor.canvas, self._upload)
        self.qr_tile: np.ndarray | None = None
        self._closed = False

    def _upload(self, png: bytes) -> str:
        return self.client.upload_photo(self.result_id, png)

    @property
    def download_url(self) -> str:
        return self.client.download_url(self.result_id)

    def open(self) -> None:
        self.assets.load_all_async()
        self.detectors.start()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for name, release in (
            ("detectors", self.detectors.close),
            ("capture preview", self.capture.close),
            ("canvas", self.compositor.canvas.clear),
            ("hands", self.hands.clear),
        ):
            try:
                release()
            except Exception:
                logger.exception("Failed to close %s", name)

    def confirm_async(self) -> threading.Thread:
        thread = threading.Thread(target=self._confirm, name="photo-upload", daemon=True)
        thread.start()
        return thread

    def _confirm(self) -> None:
        if self.capture.confirm() is not None:
            self.qr_tile = make_qr_tile(self.download_url)

    def live_hint(self) -> str:
        if self.capture.message:
            return self.capture.message
        asset_errors = self.assets.errors()
        if asset_errors:
            return " ".join(asset_errors) + "  space: capture   q: quit"
        return "Make a fist to hold your candy.  space: capture   q: quit"

    def render(self) -> np.ndarray:
        error = self.detectors.error
        if error is not None:
            return render_status_card(f"{error}\nPress q to quit.")

        capture = self.capture
        if capture.state == CaptureState.LIVE:
            canvas = self.compositor.canvas.get()
            if canvas is None:
                return render_status_card("Starting camera and hand tracking...")
            frame = canvas.copy()
            _draw_hint(frame, self.live_hint())
            return frame

        frame = capture.candidate.copy() if capture.candidate is not None else render_status_card("")
        if capture.state == CaptureState.REVIEW:
            if capture.submitting:
                hint = "Uploading..."
            else:
                hint = capture.message or "Keep this photo?  y: upload   n: retake"
            _draw_hint(frame, hint)
            return frame

        tile = self.qr_tile
        if tile is not None:
            h, w = frame.shape[:2]
            blend_image(frame, tile, w - tile.shape[1] - 16, h - tile.shape[0] - 56)
        _draw_hint(frame, f"Scan to download: {self.download_url}   q: quit", color=(40, 90, 40))
        return frame


class BoothApp:
    def __init__(
        self,
        config: BoothConfig,
        client: BoothApiClient | None = None,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], Any] = print,
    ) -> None:
        self.config = config
        self.client = client or BoothApiClient(config.server_url)
        self.input_fn = input_fn
        self.output_fn = output_fn

    def _resolve_result(self) -> tuple[int, str | None] | None:
        if self.config.result_id is not None:
            result = self.client.fetch_result(self.config.result_id)
            return int(result["id"]), result.get("candyUrl")
        outcome = run_survey(self.client, self.config.mode, self.input_fn, self.output_fn)
        if outcome is None:
            return None
        return outcome.result_id, outcome.candy_url

    def _resolve_background(self) -> str:
        if self.config.background:
            return self.config.background
        try:
            backgrounds = self.client.list_backgrounds()
        except ApiError as exc:
            logger.warning("Could not list backgrounds: %s", exc)
            return ""
        return backgrounds[0] if backgrounds else ""

    def _handle_key(self, session: BoothSession, key: int) -> bool:
        """Apply one key press. Returns False when the booth should quit."""
        if key in (ord("q"), ord("Q"), KEY_ESC):
            return False
        capture = session.capture
        if key == KEY_SPACE:
            try:
                capture.capture()
            except CaptureError as exc:
                capture.message = str(exc)
        elif key in (ord("y"), ord("Y")) and capture.state == CaptureState.REVIEW and not capture.submitting:
            session.confirm_async()
        elif key in (ord("n"), ord("N")):
            capture.retake()
        return True

    def run(self, session_factory: Callable[..., BoothSession] = BoothSession) -> None:
        resolved = self._resolve_result()
        if resolved is None:
            return
        result_id, candy_url = resolved
        session = session_factory(self.config, self.client, result_id, candy_url, background=self._resolve_background())
        window_name = self.config.window_name
        try:
            session.open()
            cv2.namedWindow(window_name, cv2.WINDOW_NORMAL)
            shown_aspect = 0.0
            while True:
                if session.detectors.state == SessionState.RUNNING and session.capture.state == CaptureState.LIVE:
                    frame = session.detectors.read_frame()
                    if frame is not None:
                        session.detectors.push_frame(frame)
                    else:
                        time.sleep(0.005)

                aspect = session.compositor.aspect_ratio
                if abs(aspect - shown_aspect) > 0.001:
                    cv2.resizeWindow(window_name, int(round(720 * aspect)), 720)
                    shown_aspect = aspect

                cv2.imshow(window_name, session.render())
                key = cv2.waitKey(1) & 0xFF
                if key != 0xFF and not self._handle_key(session, key):
                    break
        finally:
            session.close()
            cv2.destroyAllWindows()


def main(argv: Sequence[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(name)s: %(message)s")
    config = booth_config_from_args(argv)
    try:
        BoothApp(config).run()
    except BoothError as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        logger.info("Booth stopped.")


if __name__ == "__main__":
    main()
