"""
Trained-model persistence.

Stores only need ``put(key, blob)`` / ``get(key)``; both are coroutines
because real stores (browser storage, disk, network) suspend.
``ModelRepository`` decides which of two stores a model goes to by the
size of its JSON blob and falls back to the other store on failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, Optional, Union

from ..errors import QuotaExceededError, StoreError, StoreUnavailableError
from .models import TrainedModel

logger = logging.getLogger(__name__)

DEFAULT_MODEL_KEY = "automapper_trained_model"
SMALL_STORE_LIMIT_BYTES = 5 * 1024 * 1024

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class MemoryStore:
    """In-process key/value store with an optional byte capacity."""

    def __init__(self, capacity_bytes: Optional[int] = None):
        self.capacity_bytes = capacity_bytes
        self._data: Dict[str, bytes] = {}
        self.available = True

    def _used_without(self, key: str) -> int:
        return sum(len(v) for k, v in self._data.items() if k != key)

    async def put(self, key: str, blob: bytes) -> None:
        if not self.available:
            raise StoreUnavailableError("memory store is unavailable")
        if self.capacity_bytes is not None and self._used_without(key) + len(blob) > self.capacity_bytes:
            raise QuotaExceededError(
                f"{len(blob)} bytes exceed the memory store capacity of {self.capacity_bytes}"
            )
        self._data[key] = bytes(blob)

    async def get(self, key: str) -> Optional[bytes]:
        if not self.available:
            raise StoreUnavailableError("memory store is unavailable")
        return self._data.get(key)


class DirectoryStore:
    """One JSON file per key under ``root``; file I/O runs in a worker thread."""

    def __init__(self, root: Union[str, Path], capacity_bytes: Optional[int] = None):
        self.root = Path(root)
        self.capacity_bytes = capacity_bytes

    def _path(self, key: str) -> Path:
        return self.root / f"{_SAFE_KEY.sub('_', key)}.json"

    def _write(self, key: str, blob: bytes) -> None:
        path = self._path(key)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            if self.capacity_bytes is not None:
                used = sum(
                    p.stat().st_size for p in self.root.glob("*.json") if p != path
                )
                if used + len(blob) > self.capacity_bytes:
                    raise QuotaExceededError(
                        f"{len(blob)} bytes exceed the directory store capacity of {self.capacity_bytes}"
                    )
            tmp = path.with_suffix(".json.tmp")
            tmp.write_bytes(blob)
            os.replace(tmp, path)
        except OSError as e:
            raise StoreUnavailableError(f"cannot write {path}: {e}") from e

    def _read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreUnavailableError(f"cannot read {path}: {e}") from e

    async def put(self, key: str, blob: bytes) -> None:
        await asyncio.to_thread(self._write, key, blob)

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read, key)


def serialize_model(model: TrainedModel, indent: Optional[int] = None) -> bytes:
    return json.dumps(model.to_dict(), indent=indent).encode("utf-8")


def deserialize_model(blob: Union[bytes, str]) -> TrainedModel:
    if isinstance(blob, bytes):
        blob = blob.decode("utf-8")
    return TrainedModel.from_dict(json.loads(blob))


class ModelRepository:
    """Size-routed save/load of the current trained model across two stores."""

    def __init__(
        self,
        small_store=None,
        large_store=None,
        small_limit_bytes: int = SMALL_STORE_LIMIT_BYTES,
        key: str = DEFAULT_MODEL_KEY,
    ):
        self.small_store = small_store if small_store is not None else MemoryStore(small_limit_bytes)
        self.large_store = large_store if large_store is not None else MemoryStore()
        self.small_limit_bytes = small_limit_bytes
        self.key = key

    async def save(self, model: TrainedModel) -> bool:
        """True when some store accepted the model; False when both failed."""
        blob = serialize_model(model)
        if len(blob) < self.small_limit_bytes:
            order = [("small", self.small_store), ("large", self.large_store)]
        else:
            order = [("large", self.large_store), ("small", self.small_store)]

        for name, store in order:
            try:
                await store.put(self.key, blob)
                logger.info(f"Saved trained model ({len(blob)} bytes) to the {name} store")
                return True
            except StoreError as e:
                logger.warning(f"Saving model to the {name} store failed: {e}")
        logger.error("Trained model could not be saved to either store")
        return False

    async def load(self) -> Optional[TrainedModel]:
        for name, store in (("small", self.small_store), ("large", self.large_store)):
            try:
                blob = await store.get(self.key)
            except StoreError as e:
                logger.warning(f"Loading model from the {name} store failed: {e}")
                continue
            if blob is None:
                continue
            try:
                model = deserialize_model(blob)
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Stored model in the {name} store is corrupt: {e}")
                continue
            logger.info(f"Loaded trained model from the {name} store")
            return model
        return None


def export_model(model: TrainedModel, path: Union[str, Path]) -> Path:
    """Write a human-readable JSON copy of ``model``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(serialize_model(model, indent=2))
    logger.info(f"Exported trained model to {path}")
    return path


def import_model(path: Union[str, Path]) -> TrainedModel:
    """Read a model written by :func:`export_model`."""
    path = Path(path)
    return deserialize_model(path.read_bytes())
