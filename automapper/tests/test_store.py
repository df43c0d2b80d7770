import asyncio

import pytest

from automapper.errors import QuotaExceededError, StoreUnavailableError
from automapper.pipeline.models import TrainedModel
from automapper.pipeline.store import (
    DirectoryStore,
    MemoryStore,
    ModelRepository,
    export_model,
    import_model,
    serialize_model,
)


def small_model():
    return TrainedModel(
        zone_transitions={"0->1": 5, "1->2": 3},
        pattern_frequency={"0,1,2": 2},
        rhythm_patterns={0.5: 4},
        charts_used=1,
    )


def test_memory_store_quota():
    store = MemoryStore(capacity_bytes=10)
    asyncio.run(store.put("a", b"12345"))
    # replacing a key only counts the new blob
    asyncio.run(store.put("a", b"1234567890"))
    with pytest.raises(QuotaExceededError):
        asyncio.run(store.put("b", b"1"))


def test_memory_store_unavailable():
    store = MemoryStore()
    store.available = False
    with pytest.raises(StoreUnavailableError):
        asyncio.run(store.get("a"))


def test_small_models_go_to_small_store():
    repo = ModelRepository(MemoryStore(), MemoryStore())
    assert asyncio.run(repo.save(small_model()))
    assert asyncio.run(repo.small_store.get(repo.key)) is not None
    assert asyncio.run(repo.large_store.get(repo.key)) is None


def test_large_models_go_to_large_store():
    model = small_model()
    limit = len(serialize_model(model))
    repo = ModelRepository(MemoryStore(), MemoryStore(), small_limit_bytes=limit)
    assert asyncio.run(repo.save(model))
    assert asyncio.run(repo.small_store.get(repo.key)) is None
    assert asyncio.run(repo.large_store.get(repo.key)) is not None


def test_quota_falls_back_to_other_store():
    repo = ModelRepository(MemoryStore(capacity_bytes=10), MemoryStore())
    assert asyncio.run(repo.save(small_model()))
    assert asyncio.run(repo.large_store.get(repo.key)) is not None


def test_unavailable_store_falls_back():
    small = MemoryStore()
    small.available = False
    repo = ModelRepository(small, MemoryStore())
    assert asyncio.run(repo.save(small_model()))
    loaded = asyncio.run(repo.load())
    assert loaded == small_model()


def test_save_reports_failure_when_both_stores_fail():
    small, large = MemoryStore(), MemoryStore()
    small.available = False
    large.available = False
    repo = ModelRepository(small, large)
    assert asyncio.run(repo.save(small_model())) is False
    assert asyncio.run(repo.load()) is None


def test_load_prefers_small_store():
    repo = ModelRepository(MemoryStore(), MemoryStore())
    newer = small_model()
    older = TrainedModel(zone_transitions={"3->4": 1})
    asyncio.run(repo.small_store.put(repo.key, serialize_model(newer)))
    asyncio.run(repo.large_store.put(repo.key, serialize_model(older)))
    assert asyncio.run(repo.load()) == newer


def test_corrupt_blob_is_skipped():
    repo = ModelRepository(MemoryStore(), MemoryStore())
    asyncio.run(repo.small_store.put(repo.key, b"{not json"))
    asyncio.run(repo.large_store.put(repo.key, serialize_model(small_model())))
    assert asyncio.run(repo.load()) == small_model()


def test_nothing_saved_loads_none():
    assert asyncio.run(ModelRepository().load()) is None


def test_directory_store(tmp_path):
    store = DirectoryStore(tmp_path / "models")
    repo = ModelRepository(MemoryStore(capacity_bytes=1), store)
    assert asyncio.run(repo.save(small_model()))
    assert (tmp_path / "models" / f"{repo.key}.json").exists()
    assert asyncio.run(store.get("missing")) is None
    assert asyncio.run(ModelRepository(MemoryStore(), store).load()) == small_model()


def test_directory_store_capacity(tmp_path):
    store = DirectoryStore(tmp_path, capacity_bytes=4)
    with pytest.raises(QuotaExceededError):
        asyncio.run(store.put("k", b"12345"))


def test_export_import(tmp_path):
    path = export_model(small_model(), tmp_path / "out" / "model.json")
    assert path.read_text(encoding="utf-8").startswith("{\n")
    assert import_model(path) == small_model()
