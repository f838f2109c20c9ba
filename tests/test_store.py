import json

import pytest

from candybooth.errors import ResultNotFoundError
from candybooth.store import QuestionBank, ResultStore


@pytest.fixture
def store(tmp_path):
    return ResultStore(tmp_path / "results.json")


def test_create_assigns_increasing_ids(store):
    first = store.create()
    second = store.create()
    assert (first.id, second.id) == (1, 2)
    assert store.get(1).to_api() == {"id": 1, "answers": [], "candyUrl": None, "photoUrl": None}


def test_unknown_result_raises(store):
    with pytest.raises(ResultNotFoundError) as excinfo:
        store.get(42)
    assert excinfo.value.result_id == 42
    assert not store.exists(42)


def test_lifecycle_mutations_are_persisted(tmp_path, store):
    record = store.create()
    store.record_answers(record.id, [3, 11], "http://x/candy.png", "child")
    store.record_photo(record.id, "http://x/photo.png")

    reloaded = ResultStore(tmp_path / "results.json").get(record.id)
    assert reloaded.answers == [3, 11]
    assert reloaded.mode == "child"
    assert reloaded.candy_url == "http://x/candy.png"
    assert reloaded.photo_url == "http://x/photo.png"


def test_count_same_answers_uses_order_and_requires_image(store):
    for answers, candy in (([1, 2], "a"), ([1, 2], "b"), ([2, 1], "c"), ([1, 2], None)):
        record = store.create()
        store.record_answers(record.id, answers, candy, "child")
    store.create()

    assert store.count_same_answers([1, 2]) == 2
    assert store.count_same_answers([2, 1]) == 1
    assert store.count_same_answers([9]) == 0


def test_corrupt_ledger_is_set_aside(tmp_path):
    path = tmp_path / "results.json"
    path.write_text("{not json", encoding="utf-8")
    store = ResultStore(path)
    assert store.create().id == 1
    assert (tmp_path / "results.json.corrupt").read_text(encoding="utf-8") == "{not json"
    assert json.loads(path.read_text(encoding="utf-8"))["next_id"] == 2


def test_question_bank_filters_by_mode(server_config):
    bank = QuestionBank.from_file(server_config.questions_path)
    child = bank.for_mode("child")
    adult = bank.for_mode("adult")
    assert len(child) == 7 and len(adult) == 7
    assert [q.id for q in child] == sorted(q.id for q in child)
    option_ids = [o.id for q in child + adult for o in q.options]
    assert len(option_ids) == len(set(option_ids))
    assert child[0].to_api()["options"][0] == {"id": 1, "text": "Cherry blossom viewing"}


def test_missing_question_file_gives_empty_bank(tmp_path):
    assert QuestionBank.from_file(tmp_path / "nope.json").for_mode("child") == []


def test_record_answers_returns_rank_including_itself(store):
    first = store.create()
    second = store.create()
    _, rank = store.record_answers(first.id, [4, 5], "a", "adult")
    record, rank_again = store.record_answers(second.id, [4, 5], "b", "adult")
    assert (rank, rank_again) == (1, 2)
    assert record.candy_url == "b"


def test_failed_write_leaves_memory_and_disk_unchanged(tmp_path, store, monkeypatch):
    record = store.create()

    def broken_write(payload):
        raise OSError("disk full")

    monkeypatch.setattr(store, "_write", broken_write)
    with pytest.raises(OSError):
        store.record_answers(record.id, [1], "http://x/candy.png", "child")
    with pytest.raises(OSError):
        store.record_photo(record.id, "http://x/photo.png")
    with pytest.raises(OSError):
        store.create()

    assert store.get(record.id).to_api() == {"id": record.id, "answers": [], "candyUrl": None, "photoUrl": None}
    assert store.count_same_answers([1]) == 0
    monkeypatch.undo()
    assert store.create().id == record.id + 1
    assert ResultStore(tmp_path / "results.json").get(record.id).candy_url is None
