"""Audio file discovery and live catalog for the soundboard."""
from __future__ import annotations

import enum
import hashlib
import logging
import os
import re
import stat
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import quote

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer


LOGGER = logging.getLogger(__name__)


SUPPORTED_AUDIO_EXTS = ["wav", "mp3", "ogg"]

CONTENT_TYPES = {
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
}

DEFAULT_CONTENT_TYPE = "application/octet-stream"

DEFAULT_MAX_FILE_SIZE = 50 * 1024 * 1024

DEFAULT_SCAN_WORKERS = 8

AUDIO_URL_PREFIX = "/api/audio/"

_ID_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9.-]")
_DISPLAY_SEPARATOR_RE = re.compile(r"[_-]")
_WHITESPACE_RE = re.compile(r"\s+")


def extension_of(filename: str) -> str:
    suffix = Path(filename).suffix
    return suffix[1:].lower() if suffix else ""


def is_supported(extension: Optional[str]) -> bool:
    return (extension or "").lower() in SUPPORTED_AUDIO_EXTS


def content_type_for(extension: Optional[str]) -> str:
    normalised = (extension or "").lower().replace(".", "")
    return CONTENT_TYPES.get(normalised, DEFAULT_CONTENT_TYPE)


def is_hidden(filename: str) -> bool:
    return filename.startswith(".")


def validate_file_size(size: int, max_size: int) -> bool:
    return 0 < size <= max_size


def generate_entry_id(filename: str, now: Optional[float] = None) -> str:
    """Return a catalog id for ``filename``.

    The id carries the build time in milliseconds, so rebuilding the same
    file yields a new id. The digest of the raw name keeps two names that
    sanitise to the same token apart.
    """

    timestamp = int((time.time() if now is None else now) * 1000)
    sanitized = _ID_UNSAFE_RE.sub("_", filename)
    digest = hashlib.md5(filename.encode("utf-8")).hexdigest()[:8]
    return f"{sanitized}_{digest}_{timestamp}"


def display_name_for(filename: str) -> str:
    text = _DISPLAY_SEPARATOR_RE.sub(" ", Path(filename).stem)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return " ".join(word[:1].upper() + word[1:].lower() for word in text.split(" ") if word)


def _is_plain_name(filename: str) -> bool:
    if not filename or filename in {".", ".."}:
        return False
    if "/" in filename or "\x00" in filename:
        return False
    if os.sep in filename or (os.altsep and os.altsep in filename):
        return False
    return True


def _timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _isoformat(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    filename: str
    display_name: str
    extension: str
    size: int
    path: str
    content_type: str
    created_at: datetime
    modified_at: datetime

    @property
    def url(self) -> str:
        return AUDIO_URL_PREFIX + quote(self.filename)

    def to_dict(self) -> Dict[str, object]:
        # ``path`` stays server side; clients stream through ``url``.
        return {
            "id": self.id,
            "filename": self.filename,
            "displayName": self.display_name,
            "extension": self.extension,
            "size": self.size,
            "url": self.url,
            "contentType": self.content_type,
            "createdAt": _isoformat(self.created_at),
            "modifiedAt": _isoformat(self.modified_at),
        }


class BuildFailureKind(str, enum.Enum):
    NOT_A_FILE = "not_a_file"
    TOO_LARGE = "too_large"
    STAT_FAILED = "stat_failed"
    INVALID_NAME = "invalid_name"
    UNSUPPORTED_FORMAT = "unsupported_format"
    TIMEOUT = "timeout"
    BUILD_ERROR = "build_error"


@dataclass(frozen=True)
class BuildFailure:
    kind: BuildFailureKind
    filename: str
    reason: str = ""
    size: Optional[int] = None

    @property
    def silent(self) -> bool:
        """Directories and other non-files are skipped without a warning."""
        return self.kind is BuildFailureKind.NOT_A_FILE

    @property
    def empty(self) -> bool:
        return self.kind is BuildFailureKind.TOO_LARGE and self.size == 0


BuildResult = Union[CatalogEntry, BuildFailure]


class RegistryError(Exception):
    pass


class DirectoryUnavailableError(RegistryError):
    def __init__(self, directory: Path, reason: str) -> None:
        super().__init__(f"Audio directory {directory} is unavailable: {reason}")
        self.directory = directory
        self.reason = reason


class ScanError(RegistryError):
    def __init__(self, directory: Path, reason: str) -> None:
        super().__init__(f"Failed to scan audio directory {directory}: {reason}")
        self.directory = directory
        self.reason = reason


class WatcherError(RegistryError):
    def __init__(self, directory: Path, reason: str) -> None:
        super().__init__(f"Failed to watch audio directory {directory}: {reason}")
        self.directory = directory
        self.reason = reason


class MetadataBuilder:
    def __init__(self, max_file_size: int = DEFAULT_MAX_FILE_SIZE, clock: Callable[[], float] = time.time) -> None:
        self.max_file_size = max_file_size
        self._clock = clock

    def build(self, directory: Path, filename: str) -> BuildResult:
        """Stat ``directory/filename`` and describe it, or say why not."""

        if not _is_plain_name(filename):
            return BuildFailure(BuildFailureKind.INVALID_NAME, filename, "not a plain file name")
        extension = extension_of(filename)
        if not is_supported(extension):
            return BuildFailure(BuildFailureKind.UNSUPPORTED_FORMAT, filename, f"unsupported extension '{extension}'")

        path = Path(directory) / filename
        try:
            stat_result = path.stat()
        except OSError as exc:
            return BuildFailure(BuildFailureKind.STAT_FAILED, filename, str(exc))

        if not stat.S_ISREG(stat_result.st_mode):
            return BuildFailure(BuildFailureKind.NOT_A_FILE, filename, "not a regular file")

        size = stat_result.st_size
        if not validate_file_size(size, self.max_file_size):
            return BuildFailure(
                BuildFailureKind.TOO_LARGE,
                filename,
                f"size {size} outside 1..{self.max_file_size} bytes",
                size,
            )

        created = getattr(stat_result, "st_birthtime", None) or stat_result.st_ctime
        return CatalogEntry(
            id=generate_entry_id(filename, self._clock()),
            filename=filename,
            display_name=display_name_for(filename),
            extension=extension,
            size=size,
            path=os.path.abspath(path),
            content_type=content_type_for(extension),
            created_at=_timestamp(created),
            modified_at=_timestamp(stat_result.st_mtime),
        )


class CatalogStore:
    """Copy-on-write id -> entry map.

    Writers hold ``_lock`` and publish fresh dicts; readers grab the current
    reference and never see a partially applied change.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, CatalogEntry] = {}
        self._ids_by_filename: Dict[str, str] = {}
        self._generation = 0

    @staticmethod
    def _insert(
        entries: Dict[str, CatalogEntry],
        ids_by_filename: Dict[str, str],
        entry: CatalogEntry,
    ) -> Optional[CatalogEntry]:
        previous = None
        previous_id = ids_by_filename.get(entry.filename)
        if previous_id is not None:
            previous = entries.pop(previous_id, None)
        displaced = entries.get(entry.id)
        if displaced is not None and displaced.filename != entry.filename:
            ids_by_filename.pop(displaced.filename, None)
        entries[entry.id] = entry
        ids_by_filename[entry.filename] = entry.id
        return previous

    def _publish(self, entries: Dict[str, CatalogEntry], ids_by_filename: Dict[str, str]) -> None:
        self._entries = entries
        self._ids_by_filename = ids_by_filename
        self._generation += 1

    def replace_all(self, entries: Iterable[CatalogEntry]) -> int:
        new_entries: Dict[str, CatalogEntry] = {}
        new_index: Dict[str, str] = {}
        for entry in entries:
            self._insert(new_entries, new_index, entry)
        with self._lock:
            self._publish(new_entries, new_index)
            return self._generation

    def upsert(self, entry: CatalogEntry) -> Optional[CatalogEntry]:
        """Insert ``entry``; returns the entry it replaced for the same filename."""

        with self._lock:
            entries = dict(self._entries)
            ids_by_filename = dict(self._ids_by_filename)
            previous = self._insert(entries, ids_by_filename, entry)
            self._publish(entries, ids_by_filename)
        return previous

    def remove_by_filename(self, filename: str) -> Optional[CatalogEntry]:
        with self._lock:
            entry_id = self._ids_by_filename.get(filename)
            if entry_id is None:
                return None
            entries = dict(self._entries)
            ids_by_filename = dict(self._ids_by_filename)
            removed = entries.pop(entry_id, None)
            ids_by_filename.pop(filename, None)
            self._publish(entries, ids_by_filename)
        return removed

    def clear(self) -> None:
        self.replace_all([])

    def all(self) -> List[CatalogEntry]:
        entries = self._entries
        return sorted(entries.values(), key=lambda entry: (entry.filename.casefold(), entry.filename))

    def get(self, entry_id: str) -> Optional[CatalogEntry]:
        return self._entries.get(entry_id)

    def get_by_filename(self, filename: str) -> Optional[CatalogEntry]:
        entries = self._entries
        entry_id = self._ids_by_filename.get(filename)
        if entry_id is None:
            return None
        entry = entries.get(entry_id)
        if entry is None or entry.filename != filename:
            # Index and map were read from two different publications.
            for candidate in entries.values():
                if candidate.filename == filename:
                    return candidate
            return None
        return entry

    def count(self) -> int:
        return len(self._entries)

    @property
    def generation(self) -> int:
        return self._generation


@dataclass
class ScanResult:
    entries: List[CatalogEntry] = field(default_factory=list)
    failures: List[BuildFailure] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class DirectoryScanner:
    def __init__(
        self,
        builder: MetadataBuilder,
        max_workers: int = DEFAULT_SCAN_WORKERS,
        build_timeout: Optional[float] = None,
    ) -> None:
        self.builder = builder
        self.max_workers = max(1, int(max_workers))
        self.build_timeout = build_timeout

    def _list_candidates(self, directory: Path, result: ScanResult) -> List[str]:
        try:
            names = sorted(os.listdir(directory))
        except OSError as exc:
            raise ScanError(directory, exc.strerror or str(exc)) from exc
        candidates: List[str] = []
        for name in names:
            if is_hidden(name) or not is_supported(extension_of(name)):
                result.skipped.append(name)
                continue
            candidates.append(name)
        return candidates

    def _timed_build(self, directory: Path, filename: str, started: Dict[str, float]) -> BuildResult:
        started[filename] = time.monotonic()
        return self.builder.build(directory, filename)

    @staticmethod
    def _outcome(filename: str, future: Future) -> BuildResult:
        try:
            return future.result()
        except Exception as exc:
            return BuildFailure(BuildFailureKind.BUILD_ERROR, filename, str(exc) or type(exc).__name__)

    def _wait_timeout(self, pending: Dict[Future, str], started: Dict[str, float]) -> Optional[float]:
        if self.build_timeout is None:
            return None
        now = time.monotonic()
        remaining = [
            started[name] + self.build_timeout - now
            for name in pending.values()
            if name in started
        ]
        return max(min(remaining, default=self.build_timeout), 0.01)

    def _run_batch(self, directory: Path, names: List[str], outcomes: Dict[str, BuildResult]) -> List[str]:
        """Build ``names`` on a fresh pool; return the names never started.

        The build timeout counts from the moment a worker picks a file up.
        Once a build overruns, its worker stays busy, so files still queued
        behind it are handed back for another pool instead of timing out.
        """

        started: Dict[str, float] = {}
        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(names)),
            thread_name_prefix="audio-scan",
        )
        pending = {executor.submit(self._timed_build, directory, name, started): name for name in names}
        requeued: List[str] = []
        overran = False
        try:
            while pending:
                done, _ = wait(pending, timeout=self._wait_timeout(pending, started), return_when=FIRST_COMPLETED)
                for future in done:
                    name = pending.pop(future)
                    outcomes[name] = self._outcome(name, future)
                if self.build_timeout is None:
                    continue
                now = time.monotonic()
                expired = [
                    future for future, name in pending.items()
                    if name in started and now - started[name] >= self.build_timeout
                ]
                for future in expired:
                    name = pending.pop(future)
                    outcomes[name] = BuildFailure(
                        BuildFailureKind.TIMEOUT, name, f"metadata build exceeded {self.build_timeout}s"
                    )
                if expired:
                    overran = True
                    for future in [future for future in pending if future.cancel()]:
                        requeued.append(pending.pop(future))
        finally:
            # An overrun build may still be running; do not wait for it.
            executor.shutdown(wait=not overran, cancel_futures=True)
        return requeued

    def scan(self, directory: Path) -> ScanResult:
        """Build an entry for every supported file in ``directory``.

        Every build runs independently; a failed file is logged and left
        out. Only an unreadable directory raises (``ScanError``).
        """

        directory = Path(directory)
        result = ScanResult()
        candidates = self._list_candidates(directory, result)
        if not candidates:
            return result

        outcomes: Dict[str, BuildResult] = {}
        queue = candidates
        while queue:
            queue = self._run_batch(directory, queue, outcomes)

        for name in candidates:
            outcome = outcomes[name]
            if isinstance(outcome, CatalogEntry):
                result.entries.append(outcome)
            elif outcome.silent:
                LOGGER.debug("Skipping %s: %s", name, outcome.reason)
                result.skipped.append(name)
            else:
                LOGGER.warning("Failed to process audio file %s (%s): %s", name, outcome.kind.value, outcome.reason)
                result.failures.append(outcome)
        return result


@dataclass(frozen=True)
class FileChange:
    event: str
    path: str
    timestamp: datetime
    entry: Optional[CatalogEntry] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "event": self.event,
            "path": self.path,
            "entry": self.entry.to_dict() if self.entry else None,
            "timestamp": _isoformat(self.timestamp),
        }


class WatcherState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    WATCHING = "watching"


class _AudioDirectoryHandler(FileSystemEventHandler):
    def __init__(self, watcher: "ChangeWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_created(self, event):  # type: ignore[override]
        if not event.is_directory:
            self._watcher.dispatch("add", os.fsdecode(event.src_path))

    def on_modified(self, event):  # type: ignore[override]
        if not event.is_directory:
            self._watcher.dispatch("change", os.fsdecode(event.src_path))

    def on_deleted(self, event):  # type: ignore[override]
        src_path = os.fsdecode(event.src_path)
        if not event.is_directory:
            self._watcher.dispatch("remove", src_path)
        elif os.path.realpath(src_path) == os.path.realpath(self._watcher.directory):
            self._watcher.report_error(FileNotFoundError(f"watched directory {src_path} was removed"))

    def on_moved(self, event):  # type: ignore[override]
        if event.is_directory:
            return
        self._watcher.dispatch("remove", os.fsdecode(event.src_path))
        self._watcher.dispatch("add", os.fsdecode(event.dest_path))


class ChangeWatcher:
    """Keeps a ``CatalogStore`` in step with one flat directory.

    Events arrive on the watchdog observer thread. A failure after startup
    only marks the watcher unhealthy; the store keeps its last contents.
    """

    def __init__(
        self,
        directory: Path,
        store: CatalogStore,
        builder: MetadataBuilder,
        on_change: Optional[Callable[[FileChange], None]] = None,
        observer_factory: Callable[[], Observer] = Observer,
    ) -> None:
        self.directory = Path(directory)
        self._store = store
        self._builder = builder
        self._on_change = on_change
        self._observer_factory = observer_factory
        self._observer = None
        self._state = WatcherState.STOPPED
        self._state_lock = threading.Lock()
        self._event_lock = threading.Lock()
        self._failed = False
        self._last_error: Optional[BaseException] = None

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    @property
    def healthy(self) -> bool:
        if self._state is not WatcherState.WATCHING or self._failed:
            return False
        observer = self._observer
        return observer is not None and observer.is_alive()

    def start(self) -> None:
        with self._state_lock:
            if self._state is not WatcherState.STOPPED:
                return
            self._state = WatcherState.STARTING
            observer = self._observer_factory()
            observer.daemon = True
            try:
                observer.schedule(_AudioDirectoryHandler(self), str(self.directory), recursive=False)
                observer.start()
            except Exception as exc:
                self._state = WatcherState.STOPPED
                self._last_error = exc
                raise WatcherError(self.directory, str(exc)) from exc
            self._observer = observer
            self._failed = False
            self._last_error = None
            self._state = WatcherState.WATCHING
        LOGGER.info("Watching audio directory %s", self.directory)

    def stop(self) -> None:
        with self._state_lock:
            observer = self._observer
            self._observer = None
            self._state = WatcherState.STOPPED
        # Let an event already being applied finish before the caller
        # clears the store.
        with self._event_lock:
            pass
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=5)
        except Exception:  # pragma: no cover - shutdown best effort
            LOGGER.debug("Failed to stop audio directory watcher cleanly", exc_info=True)
        LOGGER.info("Stopped watching audio directory %s", self.directory)

    def report_error(self, error: BaseException) -> None:
        self._failed = True
        self._last_error = error
        LOGGER.error("Audio directory watcher failed, live updates may be missing: %s", error)

    def dispatch(self, event: str, src_path: str) -> None:
        if self._state is not WatcherState.WATCHING:
            return
        try:
            with self._event_lock:
                change = self._apply(event, Path(src_path))
        except Exception:
            LOGGER.exception("Failed to handle %s event for %s", event, src_path)
            return
        if change is not None and self._on_change is not None:
            self._on_change(change)

    def _in_directory(self, path: Path) -> bool:
        if path.parent == self.directory:
            return True
        return os.path.realpath(path.parent) == os.path.realpath(self.directory)

    def _apply(self, event: str, path: Path) -> Optional[FileChange]:
        if not self._in_directory(path):
            return None
        filename = path.name
        if is_hidden(filename) or not is_supported(extension_of(filename)):
            return None

        now = datetime.now(timezone.utc)
        if event == "remove":
            if self._state is not WatcherState.WATCHING:
                return None
            removed = self._store.remove_by_filename(filename)
            if removed is None:
                return None
            LOGGER.info("Audio file removed: %s", filename)
            return FileChange("remove", str(path), now)

        outcome = self._builder.build(self.directory, filename)
        if isinstance(outcome, BuildFailure):
            # Keep whatever entry the file already had. A copy in progress
            # shows up as an empty file first.
            if outcome.silent or outcome.empty or outcome.kind is BuildFailureKind.STAT_FAILED:
                LOGGER.debug("Ignoring %s event for %s: %s", event, filename, outcome.reason)
            else:
                LOGGER.warning("Failed to process audio file %s (%s): %s", filename, outcome.kind.value, outcome.reason)
            return None
        if self._state is not WatcherState.WATCHING:
            # Stopped while the metadata was being built.
            return None
        previous = self._store.upsert(outcome)
        kind = "change" if previous is not None else "add"
        LOGGER.info("Audio file %s: %s", "changed" if previous is not None else "added", filename)
        return FileChange(kind, str(path), now, outcome)


class Subscription:
    def __init__(self, registry: "AudioRegistry", kind: str, callback: Callable[[object], None]) -> None:
        self._registry = registry
        self.kind = kind
        self.callback = callback
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._registry._unsubscribe(self)


class AudioRegistry:
    """Live catalog of the audio files in one directory.

    ``initialize`` scans and starts watching, ``refresh`` rescans on demand
    and readers call ``list``/``get_by_id``/``count`` from any thread.
    Listeners may subscribe to ``file_change`` (a ``FileChange``) and
    ``refresh`` (the new entry list); none are required.
    """

    EVENTS: Tuple[str, ...] = ("file_change", "refresh")

    def __init__(
        self,
        directory: Union[str, Path],
        *,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        enable_watcher: bool = True,
        scan_workers: int = DEFAULT_SCAN_WORKERS,
        build_timeout: Optional[float] = None,
        observer_factory: Callable[[], Observer] = Observer,
    ) -> None:
        self.directory = Path(directory).expanduser().absolute()
        self.enable_watcher = enable_watcher
        self.store = CatalogStore()
        self.builder = MetadataBuilder(max_file_size)
        self.scanner = DirectoryScanner(self.builder, max_workers=scan_workers, build_timeout=build_timeout)
        self.watcher = ChangeWatcher(
            self.directory,
            self.store,
            self.builder,
            on_change=self._notify_file_change,
            observer_factory=observer_factory,
        )
        self._listeners: Dict[str, List[Subscription]] = {kind: [] for kind in self.EVENTS}
        self._listeners_lock = threading.Lock()
        self._scan_lock = threading.Lock()

    def initialize(self) -> ScanResult:
        self._ensure_directory()
        result = self._rescan()
        if self.enable_watcher:
            try:
                self.watcher.start()
            except WatcherError:
                LOGGER.exception("Live audio updates disabled")
        else:
            LOGGER.info("Audio directory watcher disabled")
        LOGGER.info(
            "Audio registry initialized with %d files (%d failed) from %s",
            self.store.count(),
            len(result.failures),
            self.directory,
        )
        return result

    def _ensure_directory(self) -> None:
        try:
            if not self.directory.exists():
                self.directory.mkdir(parents=True, exist_ok=True)
                LOGGER.info("Created audio directory %s", self.directory)
        except OSError as exc:
            raise DirectoryUnavailableError(self.directory, exc.strerror or str(exc)) from exc
        if not self.directory.is_dir():
            raise DirectoryUnavailableError(self.directory, "not a directory")
        if not os.access(self.directory, os.R_OK | os.X_OK):
            raise DirectoryUnavailableError(self.directory, "permission denied")

    def _rescan(self) -> ScanResult:
        start_time = time.perf_counter()
        with self._scan_lock:
            result = self.scanner.scan(self.directory)
            self.store.replace_all(result.entries)
        LOGGER.debug(
            "Scanned %s in %.3fs: %d entries, %d failures, %d skipped",
            self.directory,
            time.perf_counter() - start_time,
            len(result.entries),
            len(result.failures),
            len(result.skipped),
        )
        return result

    def refresh(self) -> List[CatalogEntry]:
        """Rescan from disk, replacing whatever the watcher built so far."""

        result = self._rescan()
        entries = self.list()
        LOGGER.info("Audio catalog refreshed: %d files, %d failures", len(entries), len(result.failures))
        self._emit("refresh", entries)
        return entries

    def shutdown(self) -> None:
        self.watcher.stop()
        self.store.clear()
        with self._listeners_lock:
            for subscriptions in self._listeners.values():
                for subscription in subscriptions:
                    subscription.active = False
                subscriptions.clear()

    def list(self) -> List[CatalogEntry]:
        return self.store.all()

    def get_by_id(self, entry_id: str) -> Optional[CatalogEntry]:
        return self.store.get(entry_id)

    def get_by_filename(self, filename: str) -> Optional[CatalogEntry]:
        return self.store.get_by_filename(filename)

    def count(self) -> int:
        return self.store.count()

    @property
    def generation(self) -> int:
        """Bumped by every committed change to the catalog."""
        return self.store.generation

    def watcher_status(self) -> Dict[str, object]:
        error = self.watcher.last_error
        return {
            "enabled": self.enable_watcher,
            "state": self.watcher.state.value,
            "healthy": self.watcher.healthy,
            "lastError": str(error) if error else None,
        }

    def subscribe(self, kind: str, callback: Callable[[object], None]) -> Subscription:
        if kind not in self._listeners:
            raise ValueError(f"Unknown registry event '{kind}'")
        subscription = Subscription(self, kind, callback)
        with self._listeners_lock:
            self._listeners[kind].append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._listeners_lock:
            subscriptions = self._listeners.get(subscription.kind, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)

    def _notify_file_change(self, change: FileChange) -> None:
        self._emit("file_change", change)

    def _emit(self, kind: str, payload: object) -> None:
        with self._listeners_lock:
            subscriptions = list(self._listeners.get(kind, []))
        for subscription in subscriptions:
            try:
                subscription.callback(payload)
            except Exception:
                LOGGER.exception("Audio registry listener failed for %s", kind)
