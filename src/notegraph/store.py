"""DocumentStore: authoritative source of note content and identity.

The store owns every :class:`~notegraph.note.Note`.  Other components (the
graph index in particular) only hold note ids and are told about changes
through the :class:`StoreListener` hooks.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Protocol, runtime_checkable

from notegraph.config import GraphConfig
from notegraph.errors import LoadCancelled, NoteNotFound, NoteReadError, StorageUnavailableError
from notegraph.note import Note, NoteId, note_id_for
from notegraph.parser import parse_note

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Listener protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class StoreListener(Protocol):
    def on_note_loaded(self, note: Note) -> None: ...
    def on_note_renamed(self, old: Note, note: Note) -> None: ...
    def on_note_deleted(self, note: Note) -> None: ...
    def on_bulk_loaded(self, notes: list[Note]) -> None: ...


@dataclass
class BulkLoad:
    notes: list[Note] = field(default_factory=list)
    failures: list[NoteReadError] = field(default_factory=list)


@dataclass
class StoreDiff:
    """Difference between the store and the files currently on disk."""

    changed: list[Path] = field(default_factory=list)
    added: list[Path] = field(default_factory=list)
    missing: list[NoteId] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.changed or self.added or self.missing)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class DocumentStore:
    """Loads note files under *root* and hands out stable :data:`NoteId` s."""

    def __init__(self, root: Path | str, *, config: GraphConfig | None = None) -> None:
        self.root = Path(root)
        self.config = config or GraphConfig()
        self._notes: dict[NoteId, Note] = {}
        #: normalised path -> id; differs from the id itself after a rename
        self._ids: dict[str, NoteId] = {}
        self._listeners: list[StoreListener] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: StoreListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: StoreListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _fire(self, hook: str, **kwargs: Any) -> None:
        for listener in list(self._listeners):
            handler = getattr(listener, hook, None)
            if handler is not None:
                handler(**kwargs)

    # ------------------------------------------------------------------
    # Paths and ids
    # ------------------------------------------------------------------

    def _abs(self, path: Path | str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.root / p

    def _path_key(self, path: Path) -> str:
        return note_id_for(path, self.root)

    def _new_id(self, key: str, taken: set[str] | None = None) -> NoteId:
        """A fresh id for *key*, suffixed when a renamed note still owns it."""
        candidate, n = key, 1
        while candidate in self._notes or (taken is not None and candidate in taken):
            n += 1
            candidate = f"{key}~{n}"
        return NoteId(candidate)

    def id_for(self, path: Path | str) -> NoteId:
        key = self._path_key(self._abs(path))
        try:
            return self._ids[key]
        except KeyError:
            raise NoteNotFound(str(path)) from None

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def get(self, note_id: NoteId) -> Note:
        try:
            return self._notes[note_id]
        except KeyError:
            raise NoteNotFound(note_id) from None

    def __contains__(self, note_id: object) -> bool:
        return note_id in self._notes

    def __iter__(self) -> Iterator[Note]:
        return iter(list(self._notes.values()))

    def __len__(self) -> int:
        return len(self._notes)

    @property
    def notes(self) -> dict[NoteId, Note]:
        return dict(self._notes)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def load(self, path: Path | str) -> NoteId:
        """Read *path* and store it, reusing the id of an already known path.

        Raises :class:`NoteReadError` when the file is unreadable.  Unchanged
        content is not re-announced to listeners.
        """
        abs_path = self._abs(path)
        key = self._path_key(abs_path)
        with self._lock:
            note_id = self._ids.get(key) or self._new_id(key)
            note = parse_note(abs_path, note_id, root=self.root, encoding=self.config.encoding)
            prev = self._notes.get(note_id)
            if prev is not None and prev.digest == note.digest and prev.path == note.path:
                return note_id
            self._notes[note_id] = note
            self._ids[key] = note_id
            logger.debug("loaded %s as %s", abs_path, note_id)
            self._fire("on_note_loaded", note=note)
        return note_id

    def rename(self, old_path: Path | str, new_path: Path | str) -> NoteId:
        """Move a note to *new_path*, keeping its id.

        The file is moved on disk when it still sits at *old_path*; when it has
        already been moved, only the store is updated.  The note is read
        before the move, so a :class:`NoteReadError` leaves both the file and
        the store where they were.
        """
        old_abs, new_abs = self._abs(old_path), self._abs(new_path)
        old_key, new_key = self._path_key(old_abs), self._path_key(new_abs)
        with self._lock:
            note_id = self._ids.get(old_key)
            if note_id is None:
                raise NoteNotFound(str(old_path))
            owner = self._ids.get(new_key)
            if owner is not None and owner != note_id:
                raise FileExistsError(f"{new_path} is already a note ({owner})")

            move = old_abs.exists()
            if move and new_abs.exists() and not old_abs.samefile(new_abs):
                raise FileExistsError(f"{new_path} already exists")

            note = parse_note(
                new_abs,
                note_id,
                root=self.root,
                encoding=self.config.encoding,
                source=old_abs if move else new_abs,
            )
            if move:
                new_abs.parent.mkdir(parents=True, exist_ok=True)
                old_abs.rename(new_abs)

            old = self._notes[note_id]
            del self._ids[old_key]
            self._ids[new_key] = note_id
            self._notes[note_id] = note
            logger.info("renamed %s -> %s (%s)", old.sort_path, note.sort_path, note_id)
            self._fire("on_note_renamed", old=old, note=note)
        return note_id

    def delete(self, note_id: NoteId, *, unlink: bool = False) -> None:
        """Forget a note; with *unlink* also remove its file."""
        with self._lock:
            note = self._notes.pop(note_id, None)
            if note is None:
                raise NoteNotFound(note_id)
            for key in [k for k, v in self._ids.items() if v == note_id]:
                del self._ids[key]
            if unlink:
                note.path.unlink(missing_ok=True)
            logger.info("deleted %s", note_id)
            self._fire("on_note_deleted", note=note)

    # ------------------------------------------------------------------
    # Enumeration and bulk load
    # ------------------------------------------------------------------

    def _excluded(self, rel: str) -> bool:
        for pattern in self.config.exclude:
            if fnmatch.fnmatch(rel, pattern):
                return True
            if pattern.startswith("**/") and fnmatch.fnmatch(rel, pattern[3:]):
                return True
        return False

    def scan(self) -> list[Path]:
        """Every note file under the root, sorted.

        Raises :class:`StorageUnavailableError` when the root cannot be
        enumerated.
        """
        if not self.root.is_dir():
            raise StorageUnavailableError(f"vault root is not a readable directory: {self.root}")
        found: set[Path] = set()
        try:
            for pattern in self.config.include:
                for path in self.root.glob(pattern):
                    if path.is_file() and not self._excluded(path.relative_to(self.root).as_posix()):
                        found.add(path)
        except OSError as exc:
            raise StorageUnavailableError(f"cannot enumerate {self.root}: {exc}") from exc
        return sorted(found)

    def load_all(
        self,
        paths: list[Path],
        *,
        workers: int | None = None,
        cancel: threading.Event | None = None,
    ) -> BulkLoad:
        """Read and extract *paths* in parallel, then commit them in one step.

        Unreadable files are collected in ``BulkLoad.failures``.  If *cancel*
        is set before the commit, :class:`LoadCancelled` is raised and the
        store is left untouched.
        """
        workers = workers or self.config.workers
        planned: list[tuple[Path, str, NoteId]] = []
        taken: set[str] = set()
        for path in paths:
            abs_path = self._abs(path)
            key = self._path_key(abs_path)
            note_id = self._ids.get(key) or self._new_id(key, taken)
            taken.add(note_id)
            planned.append((abs_path, key, note_id))

        def _extract(abs_path: Path, note_id: NoteId) -> Note:
            if cancel is not None and cancel.is_set():
                raise LoadCancelled("bulk load cancelled")
            return parse_note(abs_path, note_id, root=self.root, encoding=self.config.encoding)

        result = BulkLoad()
        keys: dict[NoteId, str] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notegraph-extract") as pool:
            futures = [(key, pool.submit(_extract, p, nid)) for p, key, nid in planned]
            for key, future in futures:
                try:
                    note = future.result()
                except NoteReadError as exc:
                    logger.warning("skipping unreadable note: %s", exc)
                    result.failures.append(exc)
                    continue
                keys[note.id] = key
                result.notes.append(note)

        if cancel is not None and cancel.is_set():
            raise LoadCancelled("bulk load cancelled before commit")

        with self._lock:
            for note in result.notes:
                self._notes[note.id] = note
                self._ids[keys[note.id]] = note.id
            logger.info("loaded %d notes (%d unreadable)", len(result.notes), len(result.failures))
            self._fire("on_bulk_loaded", notes=list(result.notes))
        return result

    def diff(self) -> StoreDiff:
        """Compare stored notes against the files on disk."""
        diff = StoreDiff()
        with self._lock:
            known = {n.path: n for n in self._notes.values()}
        on_disk = set(self.scan())
        for path, note in sorted(known.items()):
            if path not in on_disk:
                diff.missing.append(note.id)
                continue
            try:
                digest = hashlib.sha1(path.read_bytes()).hexdigest()
            except OSError:
                diff.changed.append(path)
                continue
            if digest != note.digest:
                diff.changed.append(path)
        diff.added = sorted(on_disk - set(known))
        return diff
