import threading
from types import SimpleNamespace

import numpy as np
import pytest

from candybooth.errors import DetectorLoadError
from candybooth.models import ModelCache, person_mask_from_result, reset_shared_model_cache, shared_model_cache


def test_model_is_downloaded_once(tmp_path):
    fetched = []

    def fetch(url, path):
        fetched.append(url)
        path.write_bytes(b"weights")

    cache = ModelCache(tmp_path / "models", fetch=fetch)
    first = cache.get("hand.task", "https://models.test/hand.task")
    second = cache.get("hand.task", "https://models.test/hand.task")
    assert first == second == tmp_path / "models" / "hand.task"
    assert first.read_bytes() == b"weights"
    assert fetched == ["https://models.test/hand.task"]


def test_concurrent_callers_share_one_download(tmp_path):
    gate = threading.Event()
    fetched = []

    def fetch(url, path):
        fetched.append(url)
        gate.wait(5)
        path.write_bytes(b"weights")

    cache = ModelCache(tmp_path, fetch=fetch)
    results = []
    workers = [threading.Thread(target=lambda: results.append(cache.get("seg.tflite", "u"))) for _ in range(4)]
    for worker in workers:
        worker.start()
    gate.set()
    for worker in workers:
        worker.join(5)
    assert len(fetched) == 1
    assert len(set(results)) == 1 and len(results) == 4


def test_existing_file_is_not_downloaded(tmp_path):
    (tmp_path / "hand.task").write_bytes(b"cached")
    cache = ModelCache(tmp_path, fetch=lambda url, path: pytest.fail("should not download"))
    assert cache.get("hand.task", "u").read_bytes() == b"cached"


def test_failed_download_can_be_retried(tmp_path):
    attempts = []

    def fetch(url, path):
        attempts.append(url)
        path.write_bytes(b"partial")
        if len(attempts) == 1:
            raise OSError("connection reset")

    cache = ModelCache(tmp_path, fetch=fetch)
    with pytest.raises(DetectorLoadError):
        cache.get("hand.task", "u")
    assert not (tmp_path / "hand.task.part").exists()
    assert not (tmp_path / "hand.task").exists()

    assert cache.get("hand.task", "u").read_bytes() == b"partial"
    assert len(attempts) == 2


def test_shared_cache_is_reused_per_directory(tmp_path):
    reset_shared_model_cache()
    try:
        assert shared_model_cache(tmp_path) is shared_model_cache(tmp_path)
        assert shared_model_cache(tmp_path / "other") is not shared_model_cache(tmp_path)
    finally:
        reset_shared_model_cache()


def _mask(value):
    data = np.full((2, 2), value, dtype=np.float32)
    return SimpleNamespace(numpy_view=lambda: data)


def test_person_mask_prefers_person_class():
    result = SimpleNamespace(confidence_masks=[_mask(0.1), _mask(0.9)])
    assert np.allclose(person_mask_from_result(result), 0.9)


def test_person_mask_from_single_confidence_mask():
    assert np.allclose(person_mask_from_result(SimpleNamespace(confidence_masks=[_mask(1.4)])), 1.0)


def test_person_mask_falls_back_to_category_mask():
    category = np.array([[0, 1], [1, 0]], dtype=np.uint8)
    result = SimpleNamespace(confidence_masks=None, category_mask=SimpleNamespace(numpy_view=lambda: category))
    assert person_mask_from_result(result).tolist() == [[0.0, 1.0], [1.0, 0.0]]
    assert person_mask_from_result(SimpleNamespace()) is None
