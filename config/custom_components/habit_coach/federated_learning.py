"""
File: federated_learning.py
Description: File-based federated learning between devices, with no network transport.
Models are exported as raw float32 weight files that the user shares by any external means (a file URI is handed out),
imported back into a staging directory, and merged by federated averaging. Aggregation consumes the imported files.
All file access runs in the executor and is bounded by a timeout.
"""

import asyncio
import logging
import shutil
import threading
from pathlib import Path
from typing import Callable, List, Optional, Set
from urllib.parse import urlparse
from urllib.request import url2pathname

import numpy as np
from homeassistant.core import HomeAssistant

from .const import (
    DATA_DIR_NAME,
    FEDERATED_DIR,
    EXPORT_DIR,
    IMPORT_DIR,
    AGGREGATED_DIR,
    MODELS_DIR,
    MODEL_FILE_SUFFIX,
    FILE_IO_TIMEOUT_SECONDS,
    KEY_CATEGORY_MODELS,
)
from .errors import IOFailure, SizeMismatch
from .model_compressor import weights_from_buffer, weights_to_buffer
from .models import now_ms
from .storage import StorageManager

_LOGGER = logging.getLogger(__name__)


def file_uri(path: Path) -> str:
    """Default share URI for an exported file."""
    return path.resolve().as_uri()


def path_from_uri(uri: str) -> Path:
    """Resolve a file URI (or a plain path) to a local path."""
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return Path(url2pathname(parsed.path))
    if parsed.scheme == "":
        return Path(uri)
    raise IOFailure(f"Unsupported model URI scheme: {parsed.scheme}")


def average_models(buffers: List[bytes]) -> bytes:
    """
    Federated averaging: elementwise mean of equally sized float32 weight buffers.

    Raises:
        SizeMismatch: if the buffers do not all have the same length
    """
    if not buffers:
        raise ValueError("No models to average")

    sizes = {len(b) for b in buffers}
    if len(sizes) != 1:
        raise SizeMismatch(f"Cannot average models of different sizes: {sorted(sizes)}")

    stacked = np.stack([weights_from_buffer(b) for b in buffers])
    return weights_to_buffer(stacked.mean(axis=0, dtype=np.float64))


class FederatedLearningManager:
    """Export, import and aggregation of shared model weights."""

    def __init__(
        self,
        hass: HomeAssistant,
        storage_manager: Optional[StorageManager] = None,
        data_dir: str = None,
        uri_provider: Callable[[Path], str] = file_uri,
        io_timeout: float = FILE_IO_TIMEOUT_SECONDS,
    ):
        self.hass = hass
        self.storage = storage_manager
        self.uri_provider = uri_provider
        self.io_timeout = io_timeout

        if data_dir is None:
            data_dir = hass.config.path(DATA_DIR_NAME)

        self.federated_dir = Path(data_dir) / FEDERATED_DIR
        self.export_dir = self.federated_dir / EXPORT_DIR
        self.import_dir = self.federated_dir / IMPORT_DIR
        self.aggregated_dir = self.federated_dir / AGGREGATED_DIR
        self.models_dir = self.federated_dir / MODELS_DIR

        # Import and aggregation both touch the import directory
        self._lock = asyncio.Lock()
        # Executor jobs that outlived their timeout
        self._stragglers: Set[asyncio.Future] = set()

    async def setup(self):
        """Create the model directories."""
        def _create_dirs():
            for directory in (self.export_dir, self.import_dir, self.aggregated_dir, self.models_dir):
                directory.mkdir(parents=True, exist_ok=True)

        await self.hass.async_add_executor_job(_create_dirs)
        _LOGGER.debug("Federated model directories ready under %s", self.federated_dir)

    # ==================== FILE I/O ====================

    async def _run(self, func, *args):
        """
        Run blocking file work in the executor with a timeout.

        The job receives a threading.Event as first argument. A job that times out keeps
        running in its thread; the event is set so it skips its commit step, and later
        calls wait for it before touching the directories again.
        """
        await self._wait_for_stragglers()

        abandoned = threading.Event()
        job = asyncio.ensure_future(self.hass.async_add_executor_job(func, abandoned, *args))
        try:
            return await asyncio.wait_for(asyncio.shield(job), timeout=self.io_timeout)
        except asyncio.TimeoutError as err:
            abandoned.set()
            self._stragglers.add(job)
            job.add_done_callback(self._forget_straggler)
            _LOGGER.error("File operation timed out after %ss", self.io_timeout)
            raise IOFailure(f"File operation timed out after {self.io_timeout}s") from err
        except OSError as err:
            _LOGGER.error("File operation failed: %s", err)
            raise IOFailure(str(err)) from err

    def _forget_straggler(self, job: asyncio.Future):
        self._stragglers.discard(job)
        if not job.cancelled() and job.exception() is not None:
            _LOGGER.warning("Abandoned file operation failed: %s", job.exception())

    async def _wait_for_stragglers(self):
        if not self._stragglers:
            return
        _, pending = await asyncio.wait(set(self._stragglers), timeout=self.io_timeout)
        if pending:
            raise IOFailure(f"{len(pending)} earlier file operation(s) still running")

    @staticmethod
    def _unique_path(directory: Path, stem: str) -> Path:
        path = directory / f"{stem}{MODEL_FILE_SUFFIX}"
        counter = 1
        while path.exists():
            path = directory / f"{stem}_{counter}{MODEL_FILE_SUFFIX}"
            counter += 1
        return path

    @staticmethod
    def _commit(staging: Path, path: Path, abandoned: threading.Event) -> bool:
        """Move a staged file into place unless the caller gave up on it."""
        if abandoned.is_set():
            staging.unlink(missing_ok=True)
            _LOGGER.warning("Discarded %s, the operation had timed out", path.name)
            return False
        staging.replace(path)
        return True

    @classmethod
    def _write_atomic(cls, abandoned: threading.Event, path: Path, data: bytes) -> bool:
        staging = path.with_name(path.name + ".part")
        with open(staging, "wb") as f:
            f.write(data)
        return cls._commit(staging, path, abandoned)

    # ==================== EXPORT / IMPORT ====================

    async def async_export_model(self, habit_id: str, category: Optional[str], buffer: bytes) -> str:
        """
        Write a model to the export directory.

        Returns:
            Shareable URI of the exported file
        """
        weights_from_buffer(buffer)
        category_name = category.lower() if category else "uncategorized"

        def _export(abandoned):
            path = self._unique_path(self.export_dir, f"model_{category_name}_{now_ms()}")
            self._write_atomic(abandoned, path, buffer)
            return path

        path = await self._run(_export)
        _LOGGER.info("Exported model for habit %s to %s", habit_id, path.name)
        return self.uri_provider(path)

    async def async_import_model(self, uri: str) -> Path:
        """
        Copy a shared model into the import directory.

        Returns:
            Path of the imported copy
        """
        source = path_from_uri(uri)

        def _import(abandoned):
            path = self._unique_path(self.import_dir, f"imported_{now_ms()}")
            staging = path.with_name(path.name + ".part")
            with open(source, "rb") as src, open(staging, "wb") as dst:
                shutil.copyfileobj(src, dst)
            self._commit(staging, path, abandoned)
            return path

        async with self._lock:
            path = await self._run(_import)

        _LOGGER.info("Imported model from %s as %s", uri, path.name)
        return path

    # ==================== AGGREGATION ====================

    def _imported_files(self) -> List[Path]:
        return sorted(self.import_dir.glob(f"*{MODEL_FILE_SUFFIX}"))

    async def async_aggregate_models(self, category: Optional[str] = None) -> Optional[Path]:
        """
        Average every imported model and consume the imports.

        Args:
            category: Habit category to register the aggregated model for (optional)

        Returns:
            Path of the aggregated model, or None if there was nothing to aggregate
        """
        async with self._lock:
            files = await self._run(lambda _abandoned: self._imported_files())
            if not files:
                _LOGGER.debug("No imported models to aggregate")
                return None

            def _load(_abandoned):
                return [f.read_bytes() for f in files]

            buffers = await self._run(_load)
            aggregated = average_models(buffers)

            category_name = category.lower() if category else "general"

            def _save(abandoned):
                path = self._unique_path(self.aggregated_dir, f"aggregated_{category_name}_{now_ms()}")
                # Imports are only consumed once the aggregate is in place
                if self._write_atomic(abandoned, path, aggregated):
                    for f in files:
                        f.unlink()
                return path

            path = await self._run(_save)

        _LOGGER.info("Aggregated %d models into %s", len(buffers), path.name)

        if category:
            await self._save_category_model(category, aggregated)

        return path

    # ==================== CATEGORY MODELS ====================

    async def _save_category_model(self, category: str, buffer: bytes):
        path = self.models_dir / f"category_{category.lower()}{MODEL_FILE_SUFFIX}"
        await self._run(self._write_atomic, path, buffer)

        if self.storage:
            await self.storage.set_state_dict_item(KEY_CATEGORY_MODELS, category.lower(), str(path))

        _LOGGER.info("Registered aggregated model for category %s", category)

    async def async_get_category_model(self, category: str) -> Optional[bytes]:
        """Active model for a habit category, or None if none has been aggregated."""
        path = self.models_dir / f"category_{category.lower()}{MODEL_FILE_SUFFIX}"

        def _read(_abandoned):
            if not path.exists():
                return None
            return path.read_bytes()

        return await self._run(_read)

    # ==================== COUNTS ====================

    def get_imported_model_count(self) -> int:
        return len(self._imported_files())

    def get_aggregated_model_count(self) -> int:
        return len(list(self.aggregated_dir.glob(f"*{MODEL_FILE_SUFFIX}")))
