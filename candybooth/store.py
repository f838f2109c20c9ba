from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Sequence

from .errors import ResultNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class ResultRecord:
    id: int
    answers: list[int] = field(default_factory=list)
    candy_url: str | None = None
    photo_url: str | None = None
    mode: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "answers": list(self.answers),
            "candyUrl": self.candy_url,
            "photoUrl": self.photo_url,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "ResultRecord":
        return cls(
            id=int(raw["id"]),
            answers=[int(a) for a in raw.get("answers", [])],
            candy_url=raw.get("candy_url"),
            photo_url=raw.get("photo_url"),
            mode=raw.get("mode"),
            created_at=float(raw.get("created_at", 0.0)),
            updated_at=float(raw.get("updated_at", 0.0)),
        )


class ResultStore:
    """JSON-file ledger of result records. Records are only ever created and updated."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._data = self._load_or_create()

    def _default_data(self) -> dict:
        return {"next_id": 1, "results": {}}

    def _load_or_create(self) -> dict:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.is_file():
            data = self._default_data()
            self._write(data)
            return data
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                loaded = json.load(fh)
            if not isinstance(loaded, dict) or not isinstance(loaded.get("results"), dict):
                raise ValueError("results ledger root must be a dict with a results map")
            return loaded
        except (OSError, ValueError) as exc:
            backup = self.path.with_suffix(self.path.suffix + ".corrupt")
            logger.error("Unreadable results ledger %s (%s); moved to %s", self.path, exc, backup)
            os.replace(self.path, backup)
            data = self._default_data()
            self._write(data)
            return data

    def _write(self, payload: dict) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    def _get_unlocked(self, result_id: int) -> dict:
        raw = self._data["results"].get(str(result_id))
        if raw is None:
            raise ResultNotFoundError(result_id)
        return raw

    def _commit_unlocked(self, raw: dict, **extra: object) -> None:
        # Persist first; memory only changes once the file write succeeded.
        payload = {**self._data, **extra, "results": {**self._data["results"], str(raw["id"]): raw}}
        self._write(payload)
        self._data = payload

    def _count_same_unlocked(self, answers: Sequence[int]) -> int:
        target = [int(a) for a in answers]
        return sum(
            1
            for raw in self._data["results"].values()
            if raw.get("candy_url") and [int(a) for a in raw.get("answers", [])] == target
        )

    def create(self) -> ResultRecord:
        with self._lock:
            result_id = int(self._data.get("next_id", 1))
            now = time.time()
            record = ResultRecord(id=result_id, created_at=now, updated_at=now)
            self._commit_unlocked(asdict(record), next_id=result_id + 1)
        return record

    def get(self, result_id: int) -> ResultRecord:
        with self._lock:
            return ResultRecord.from_dict(self._get_unlocked(result_id))

    def exists(self, result_id: int) -> bool:
        with self._lock:
            return str(result_id) in self._data["results"]

    def record_answers(
        self, result_id: int, answers: Sequence[int], candy_url: str | None, mode: str
    ) -> tuple[ResultRecord, int]:
        """Store the answers and generated image; returns the record and its duplicate rank."""
        with self._lock:
            raw = {
                **self._get_unlocked(result_id),
                "answers": [int(a) for a in answers],
                "candy_url": candy_url,
                "mode": mode,
                "updated_at": time.time(),
            }
            self._commit_unlocked(raw)
            return ResultRecord.from_dict(raw), self._count_same_unlocked(raw["answers"])

    def record_photo(self, result_id: int, photo_url: str) -> ResultRecord:
        with self._lock:
            raw = {**self._get_unlocked(result_id), "photo_url": photo_url, "updated_at": time.time()}
            self._commit_unlocked(raw)
            return ResultRecord.from_dict(raw)

    def count_same_answers(self, answers: Sequence[int]) -> int:
        with self._lock:
            return self._count_same_unlocked(answers)


@dataclass(frozen=True)
class QuestionOption:
    id: int
    text: str


@dataclass(frozen=True)
class Question:
    id: int
    prompt: str
    mode: str
    options: tuple[QuestionOption, ...]

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "question": self.prompt,
            "options": [{"id": o.id, "text": o.text} for o in self.options],
        }


class QuestionBank:
    """Read-only survey questions loaded from a JSON seed file."""

    def __init__(self, questions: Sequence[Question]) -> None:
        self._questions = sorted(questions, key=lambda q: q.id)

    @classmethod
    def from_file(cls, path: Path) -> "QuestionBank":
        path = Path(path)
        if not path.is_file():
            logger.warning("Question file %s not found; survey will report no questions", path)
            return cls([])
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
        questions = []
        for item in raw.get("questions", []):
            options = tuple(
                QuestionOption(id=int(o["id"]), text=str(o["text"]))
                for o in sorted(item.get("options", []), key=lambda o: int(o["id"]))
            )
            questions.append(
                Question(id=int(item["id"]), prompt=str(item["question"]), mode=str(item["mode"]), options=options)
            )
        return cls(questions)

    def for_mode(self, mode: str) -> list[Question]:
        return [q for q in self._questions if q.mode == mode]
