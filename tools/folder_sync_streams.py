from __future__ import annotations

import hashlib
import shutil
import threading
from pathlib import Path
from typing import BinaryIO, Callable, Optional


_CHUNK_SIZE = 1024 * 1024

ProgressObserver = Callable[[int], None]


class ProgressTicker:
    """Reports cumulative byte counts to an observer on a fixed interval.

    The ticker runs on its own daemon thread so reports keep flowing even
    while a read or write is blocked. Without an observer no thread is
    started and updates are simply counted.
    """

    def __init__(self, observer: Optional[ProgressObserver], interval: float) -> None:
        self.observer = observer
        self.interval = interval
        self.processed = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "ProgressTicker":
        if self.observer is not None:
            self._thread = threading.Thread(target=self._tick, name="folder-sync-progress", daemon=True)
            self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if exc_type is None and self.observer is not None:
            self.observer(self.processed)

    def add(self, count: int) -> None:
        self.processed += count

    def _tick(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.observer(self.processed)


class HashingReader:
    """File-like wrapper that digests every chunk read through it."""

    def __init__(self, handle: BinaryIO, ticker: ProgressTicker) -> None:
        self._handle = handle
        self._ticker = ticker
        self._hasher = hashlib.sha1()

    def read(self, size: int = -1) -> bytes:
        chunk = self._handle.read(size)
        if chunk:
            self._hasher.update(chunk)
            self._ticker.add(len(chunk))
        return chunk

    def hexdigest(self) -> str:
        return self._hasher.hexdigest()


def hash_file(path: Path, on_progress: Optional[ProgressObserver] = None, interval: float = 0.1) -> str:
    """Return the SHA-1 hex digest of ``path`` read in constant memory."""
    with ProgressTicker(on_progress, interval) as ticker, path.open("rb") as handle:
        reader = HashingReader(handle, ticker)
        while reader.read(_CHUNK_SIZE):
            pass
        return reader.hexdigest()


def copy_file(
    src_path: Path,
    dest_path: Path,
    on_progress: Optional[ProgressObserver] = None,
    interval: float = 0.5,
) -> str:
    """Copy ``src_path`` to ``dest_path`` and return the digest of the bytes copied."""
    with ProgressTicker(on_progress, interval) as ticker:
        with src_path.open("rb") as src, dest_path.open("wb") as dest:
            reader = HashingReader(src, ticker)
            shutil.copyfileobj(reader, dest, _CHUNK_SIZE)
        return reader.hexdigest()


__all__ = ["HashingReader", "ProgressTicker", "copy_file", "hash_file"]
