from __future__ import annotations

import hashlib
import json
import os
import re
import stat
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .folder_sync_streams import ProgressObserver, copy_file, hash_file


_METADATA_PREFIX = ".foldersync_metadata_"
_METADATA_SUFFIX = ".json"
_METADATA_NAME = re.compile(re.escape(_METADATA_PREFIX) + r"[^/]+" + re.escape(_METADATA_SUFFIX) + r"(?:\.tmp-\d+)?")
_FILE_ATTRIBUTE_HIDDEN = 0x02
_FILE_ATTRIBUTE_NORMAL = 0x80

StatusCallback = Callable[[str], None]
ProgressCallback = Callable[[str, int, int], None]


class FolderSyncError(Exception):
    """Base class for every failure raised by the sync core."""


class UsageError(FolderSyncError):
    pass


class ScanError(FolderSyncError):
    pass


class MetadataLoadError(FolderSyncError):
    pass


class TransferError(FolderSyncError):
    pass


class VerificationMismatch(FolderSyncError):
    def __init__(self, rel: str, expected: str, actual: str) -> None:
        super().__init__(f"{rel}: expected {expected}, read back {actual}")
        self.rel = rel
        self.expected = expected
        self.actual = actual


class Side(str, Enum):
    SOURCE = "source"
    DESTINATION = "destination"


class SyncAction(str, Enum):
    COPY = "copy"
    TOUCH_TIMESTAMP = "touch"
    NOOP = "noop"


def _ms(ns: int) -> int:
    return ns // 1_000_000


@dataclass(frozen=True)
class FileEntry:
    path: Path
    rel: str
    size: int
    mtime_ns: int
    atime_ns: int

    @property
    def mtime_ms(self) -> int:
        return _ms(self.mtime_ns)


@dataclass
class FileRecord:
    sha: str
    mtime: int  # milliseconds since the epoch

    def as_dict(self) -> Dict[str, Any]:
        return {"sha": self.sha, "mtime": self.mtime}


@dataclass
class SyncMetadata:
    destination: str
    source_files: Dict[str, FileRecord] = field(default_factory=dict)
    destination_files: Dict[str, FileRecord] = field(default_factory=dict)

    def records(self, side: Union[Side, str]) -> Dict[str, FileRecord]:
        if Side(side) is Side.SOURCE:
            return self.source_files
        return self.destination_files

    def as_dict(self) -> Dict[str, Any]:
        return {
            "destination": self.destination,
            "sourceFiles": {rel: record.as_dict() for rel, record in sorted(self.source_files.items())},
            "destinationFiles": {rel: record.as_dict() for rel, record in sorted(self.destination_files.items())},
        }


@dataclass
class SyncDecision:
    action: SyncAction
    entry: FileEntry
    detail: str

    @property
    def rel(self) -> str:
        return self.entry.rel


@dataclass
class SyncResult:
    status: str
    rel: str
    detail: str


@dataclass
class SyncSummary:
    total: int = 0
    copied: int = 0
    touched: int = 0
    unchanged: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "copied": self.copied,
            "touched": self.touched,
            "unchanged": self.unchanged,
            "failed": self.failed,
        }


@dataclass
class FolderSyncConfig:
    source: Path
    destination: Path
    progress_interval: float = 0.5
    hash_progress_interval: float = 0.1
    continue_on_error: bool = False

    def __post_init__(self) -> None:
        if not self.source or not self.destination:
            raise UsageError("Usage: foldersync <source> <destination>")
        self.source = Path(self.source).expanduser()
        self.destination = Path(self.destination).expanduser()


def normalize_root(path: Union[Path, str]) -> str:
    return os.path.normpath(os.path.abspath(str(path)))


def destination_identity(destination: Union[Path, str]) -> str:
    text = normalize_root(destination)
    return hashlib.sha1(text.encode("utf-8", errors="ignore")).hexdigest()


def is_metadata_file(rel: str) -> bool:
    """True for cache files (and their temporary siblings) at a source root."""
    return _METADATA_NAME.fullmatch(rel) is not None


def _observer(callback: Optional[ProgressCallback], label: str, total: int) -> Optional[ProgressObserver]:
    if callback is None:
        return None
    return lambda processed: callback(label, processed, total)


def _set_hidden(path: Path, hidden: bool) -> None:
    if not sys.platform.startswith("win") or not path.exists():
        return
    import ctypes

    attributes = _FILE_ATTRIBUTE_HIDDEN if hidden else _FILE_ATTRIBUTE_NORMAL
    ctypes.windll.kernel32.SetFileAttributesW(str(path), attributes)  # type: ignore[attr-defined]


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class DirectoryScanner:
    """Recursively lists regular files below a root, keyed by ``/``-separated paths."""

    def __init__(self, exclude: Optional[Callable[[str], bool]] = None) -> None:
        self.exclude = exclude

    def scan(self, root: Path) -> List[FileEntry]:
        root = Path(root)
        root_str = str(root)
        entries: List[FileEntry] = []
        stack = [root]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    for entry in it:
                        if entry.is_symlink():
                            continue
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(Path(entry.path))
                            continue
                        if not entry.is_file(follow_symlinks=False):
                            continue
                        rel = os.path.relpath(entry.path, root_str).replace(os.sep, "/")
                        if self.exclude and self.exclude(rel):
                            continue
                        try:
                            stat_result = entry.stat(follow_symlinks=False)
                        except FileNotFoundError:
                            continue
                        if not stat.S_ISREG(stat_result.st_mode):
                            continue
                        entries.append(
                            FileEntry(
                                path=Path(entry.path),
                                rel=rel,
                                size=int(stat_result.st_size),
                                mtime_ns=stat_result.st_mtime_ns,
                                atime_ns=stat_result.st_atime_ns,
                            )
                        )
            except OSError as exc:
                raise ScanError(f"Cannot read directory {current}: {exc}") from exc
        entries.sort(key=lambda item: item.rel)
        return entries


def _decode_records(section: Any, key: str) -> Dict[str, FileRecord]:
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise MetadataLoadError(f"'{key}' is not an object")
    records: Dict[str, FileRecord] = {}
    for rel, payload in section.items():
        if not isinstance(payload, dict):
            continue
        sha = payload.get("sha")
        mtime = payload.get("mtime")
        if not isinstance(sha, str) or isinstance(mtime, bool) or not isinstance(mtime, (int, float)):
            continue
        records[str(rel)] = FileRecord(sha, int(mtime))
    return records


def decode_metadata(text: str, destination: str) -> SyncMetadata:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MetadataLoadError(f"Invalid metadata JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MetadataLoadError("Metadata root is not an object")
    if payload.get("destination") != destination:
        raise MetadataLoadError(f"Metadata belongs to {payload.get('destination')!r}")
    return SyncMetadata(
        destination=destination,
        source_files=_decode_records(payload.get("sourceFiles"), "sourceFiles"),
        destination_files=_decode_records(payload.get("destinationFiles"), "destinationFiles"),
    )


class MetadataStore:
    """JSON cache of file hashes kept inside the source tree, one file per destination."""

    def __init__(self, source_root: Path):
        self.source_root = Path(source_root)

    def path_for(self, destination: Union[Path, str]) -> Path:
        return self.source_root / f"{_METADATA_PREFIX}{destination_identity(destination)}{_METADATA_SUFFIX}"

    def load(self, destination: Union[Path, str]) -> SyncMetadata:
        identity = normalize_root(destination)
        path = self.path_for(identity)
        try:
            text = path.read_text(encoding="utf-8", errors="surrogateescape")
            return decode_metadata(text, identity)
        except (OSError, ValueError, MetadataLoadError):
            return SyncMetadata(identity)

    def save(self, metadata: SyncMetadata) -> bool:
        path = self.path_for(metadata.destination)
        tmp_path = path.parent / f"{path.name}.tmp-{os.getpid()}"
        try:
            # Undecodable file names come back from os.scandir as lone surrogates.
            with tmp_path.open("w", encoding="utf-8", errors="surrogateescape") as handle:
                json.dump(metadata.as_dict(), handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            # Windows refuses to replace a hidden file.
            _set_hidden(path, False)
            os.replace(tmp_path, path)
        except (OSError, ValueError):
            try:
                _remove_quietly(tmp_path)
            except OSError:
                pass
            return False
        _set_hidden(path, True)
        return True


class FileMetadataResolver:
    def __init__(
        self,
        metadata: SyncMetadata,
        source_root: Path,
        destination_root: Path,
        status_callback: StatusCallback,
        progress_callback: Optional[ProgressCallback] = None,
        hash_interval: float = 0.1,
    ) -> None:
        self.metadata = metadata
        self.source_root = Path(source_root)
        self.destination_root = Path(destination_root)
        self.status_callback = status_callback
        self.progress_callback = progress_callback
        self.hash_interval = hash_interval
        self.hashed_files = 0
        self.hashed_bytes = 0

    def root_for(self, side: Union[Side, str]) -> Path:
        if Side(side) is Side.SOURCE:
            return self.source_root
        return self.destination_root

    def resolve(self, side: Union[Side, str], rel: str) -> FileRecord:
        """Return the cached record for ``rel`` if its mtime still matches, otherwise rehash.

        A cached hash is trusted purely on an unchanged mtime, so content
        rewritten under a preserved timestamp is not noticed.
        """
        side = Side(side)
        records = self.metadata.records(side)
        path = self.root_for(side) / rel
        try:
            stat_result = path.stat()
        except OSError as exc:
            raise ScanError(f"Cannot stat {path}: {exc}") from exc
        live_mtime = _ms(stat_result.st_mtime_ns)

        record = records.get(rel)
        if record is not None and record.mtime != live_mtime:
            self.status_callback(f"{side.value.capitalize()} file {rel} modification time has changed")
            record = None
        if record is not None:
            return record

        label = f"Hashing {side.value} {rel}..."
        self.status_callback(label)
        size = int(stat_result.st_size)
        sha = hash_file(path, _observer(self.progress_callback, label, size), self.hash_interval)
        self.hashed_files += 1
        self.hashed_bytes += size
        record = FileRecord(sha, live_mtime)
        records[rel] = record
        return record


class SyncPlanner:
    def __init__(self, resolver: FileMetadataResolver, status_callback: StatusCallback) -> None:
        self.resolver = resolver
        self.status_callback = status_callback

    def plan(self, source_entries: Sequence[FileEntry], destination_entries: Sequence[FileEntry]) -> List[SyncDecision]:
        by_rel = {entry.rel: entry for entry in destination_entries}
        return [self._decide(entry, by_rel.get(entry.rel)) for entry in source_entries]

    def _decide(self, entry: FileEntry, dest_entry: Optional[FileEntry]) -> SyncDecision:
        rel = entry.rel
        if dest_entry is None:
            self.status_callback(f"File {rel} does not exist in destination")
            return SyncDecision(SyncAction.COPY, entry, "Missing in destination")

        src_record = self.resolver.resolve(Side.SOURCE, rel)
        dest_record = self.resolver.resolve(Side.DESTINATION, rel)
        metadata = self.resolver.metadata

        if src_record.sha != dest_record.sha:
            self.status_callback(f"File {rel} hash does not match")
            # Dropped before copying so an interrupted copy is never trusted.
            metadata.destination_files.pop(rel, None)
            return SyncDecision(SyncAction.COPY, entry, "Content differs")

        if src_record.mtime != dest_record.mtime:
            self.status_callback(f"File {rel} modification time does not match; updating")
            os.utime(dest_entry.path, ns=(entry.atime_ns, entry.mtime_ns))
            metadata.destination_files[rel] = FileRecord(dest_record.sha, entry.mtime_ms)
            return SyncDecision(SyncAction.TOUCH_TIMESTAMP, entry, "Timestamp corrected")

        return SyncDecision(SyncAction.NOOP, entry, "Up to date")


class FileTransfer:
    def __init__(self, interval: float = 0.5) -> None:
        self.interval = interval

    def transfer(self, src_path: Path, dest_path: Path, on_progress: Optional[ProgressObserver] = None) -> str:
        """Copy one file, returning the SHA-1 of the bytes read from the source."""
        started = False
        try:
            src_stat = src_path.stat()
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            started = True
            digest = copy_file(src_path, dest_path, on_progress, self.interval)
            os.utime(dest_path, ns=(src_stat.st_atime_ns, src_stat.st_mtime_ns))
        except OSError as exc:
            if started:
                try:
                    _remove_quietly(dest_path)
                except OSError:
                    pass
            raise TransferError(f"Cannot copy {src_path} to {dest_path}: {exc}") from exc
        return digest


class Verifier:
    def __init__(self, interval: float = 0.1) -> None:
        self.interval = interval

    def verify(self, dest_path: Path, expected_hash: str, on_progress: Optional[ProgressObserver] = None) -> bool:
        return hash_file(dest_path, on_progress, self.interval) == expected_hash

    def confirm(
        self,
        metadata: SyncMetadata,
        rel: str,
        dest_path: Path,
        expected_hash: str,
        on_progress: Optional[ProgressObserver] = None,
    ) -> FileRecord:
        """Re-read a freshly copied file and record it as synced only if it matches."""
        actual = hash_file(dest_path, on_progress, self.interval)
        if actual != expected_hash:
            _remove_quietly(dest_path)
            metadata.destination_files.pop(rel, None)
            raise VerificationMismatch(rel, expected_hash, actual)
        mtime = _ms(dest_path.stat().st_mtime_ns)
        metadata.source_files[rel] = FileRecord(expected_hash, mtime)
        metadata.destination_files[rel] = FileRecord(expected_hash, mtime)
        return metadata.destination_files[rel]


class FolderSyncCore:
    def __init__(
        self,
        config: FolderSyncConfig,
        status_callback: Optional[StatusCallback] = None,
        progress_callback: Optional[ProgressCallback] = None,
        result_callback: Optional[Callable[[SyncResult], None]] = None,
        transfer: Optional[FileTransfer] = None,
        verifier: Optional[Verifier] = None,
    ) -> None:
        self.config = config
        self.status_callback = status_callback or (lambda message: None)
        self.progress_callback = progress_callback
        self.result_callback = result_callback or (lambda item: None)
        self.transfer = transfer or FileTransfer(config.progress_interval)
        self.verifier = verifier or Verifier(config.hash_progress_interval)
        self.summary = SyncSummary()
        self.metadata: Optional[SyncMetadata] = None
        self.decisions: List[SyncDecision] = []

    def run(self) -> SyncSummary:
        source = self.config.source
        destination = self.config.destination
        if not source.is_dir():
            raise ScanError(f"Source directory does not exist: {source}")
        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ScanError(f"Cannot create destination {destination}: {exc}") from exc

        store = MetadataStore(source)
        metadata = store.load(destination)
        self.metadata = metadata

        source_entries = DirectoryScanner(exclude=is_metadata_file).scan(source)
        destination_entries = DirectoryScanner().scan(destination)
        self.status_callback(
            f"Found {len(source_entries)} source files and {len(destination_entries)} destination files"
        )

        resolver = FileMetadataResolver(
            metadata,
            source,
            destination,
            self.status_callback,
            self.progress_callback,
            self.config.hash_progress_interval,
        )
        self.decisions = SyncPlanner(resolver, self.status_callback).plan(source_entries, destination_entries)
        self._checkpoint(store, metadata)

        pending = [decision for decision in self.decisions if decision.action is SyncAction.COPY]
        self.status_callback(f"We need to copy {len(pending)} files")
        for decision in self.decisions:
            if decision.action is SyncAction.TOUCH_TIMESTAMP:
                self._record("TOUCHED", decision.rel, decision.detail)
            elif decision.action is SyncAction.NOOP:
                self._record("UNCHANGED", decision.rel, decision.detail)

        try:
            for decision in pending:
                self._copy(decision, destination, metadata)
        finally:
            self._checkpoint(store, metadata)
        self.status_callback("Done")
        return self.summary

    def _copy(self, decision: SyncDecision, destination: Path, metadata: SyncMetadata) -> None:
        rel = decision.rel
        size = decision.entry.size
        dest_path = destination / rel
        label = f"Copying {rel}..."
        self.status_callback(label)
        try:
            digest = self.transfer.transfer(decision.entry.path, dest_path, _observer(self.progress_callback, label, size))
        except TransferError as exc:
            if not self.config.continue_on_error:
                raise
            self.status_callback(f"ERROR: {exc}")
            self._record("FAILED", rel, str(exc))
            return

        self.status_callback("Verifying...")
        try:
            self.verifier.confirm(metadata, rel, dest_path, digest, _observer(self.progress_callback, "Verifying...", size))
        except VerificationMismatch as exc:
            self.status_callback(
                f"ERROR: Hash of source ({exc.expected}) does not match destination ({exc.actual})!!"
            )
            self._record("FAILED", rel, "Verification failed; destination removed")
            return
        self._record("COPIED", rel, decision.detail)

    def _checkpoint(self, store: MetadataStore, metadata: SyncMetadata) -> None:
        if not store.save(metadata):
            self.status_callback(f"Warning: cannot write metadata file {store.path_for(metadata.destination)}")

    def _record(self, status: str, rel: str, detail: str) -> None:
        self.summary.total += 1
        if status == "COPIED":
            self.summary.copied += 1
        elif status == "TOUCHED":
            self.summary.touched += 1
        elif status == "UNCHANGED":
            self.summary.unchanged += 1
        elif status == "FAILED":
            self.summary.failed += 1
        self.result_callback(SyncResult(status, rel, detail))


__all__ = [
    "DirectoryScanner",
    "FileEntry",
    "FileMetadataResolver",
    "FileRecord",
    "FileTransfer",
    "FolderSyncConfig",
    "FolderSyncCore",
    "FolderSyncError",
    "MetadataLoadError",
    "MetadataStore",
    "ScanError",
    "Side",
    "SyncAction",
    "SyncDecision",
    "SyncMetadata",
    "SyncPlanner",
    "SyncResult",
    "SyncSummary",
    "TransferError",
    "UsageError",
    "VerificationMismatch",
    "Verifier",
    "destination_identity",
    "is_metadata_file",
    "normalize_root",
]
