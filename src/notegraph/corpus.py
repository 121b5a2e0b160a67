"""Corpus: one vault's document store and graph index, wired together.

Usage::

    with Corpus.open("~/notes") as corpus:
        corpus.resolve("Beta")            # Resolved / Ambiguous / NotFound
        corpus.backlinks(note_id)         # [Reference, ...]
        corpus.tag("project")             # [NoteId, ...]
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from notegraph.config import GraphConfig, load_config
from notegraph.errors import AmbiguousLinkWarning, NoteReadError
from notegraph.index import GraphIndex, GraphState, Resolution
from notegraph.note import Note, NoteId, Reference
from notegraph.store import DocumentStore, StoreDiff

logger = logging.getLogger(__name__)


class Corpus:
    """A loaded vault: the query surface consumed by renderers and editors."""

    def __init__(self, root: Path | str, *, config: GraphConfig | None = None) -> None:
        self.root = Path(root).expanduser()
        self.config = config or load_config(self.root)
        self.store = DocumentStore(self.root, config=self.config)
        self.index = GraphIndex(reindex=self.config.reindex)
        #: files that could not be read during the last bulk load
        self.failures: list[NoteReadError] = []
        self._open = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def open(
        cls,
        root: Path | str,
        *,
        config: GraphConfig | None = None,
        cancel: threading.Event | None = None,
    ) -> Corpus:
        corpus = cls(root, config=config)
        corpus.init(cancel=cancel)
        return corpus

    def init(self, *, cancel: threading.Event | None = None) -> None:
        """Cold start: scan, extract in parallel, then build the index.

        All-or-nothing: a cancelled or failed load leaves the corpus empty.
        """
        paths = self.store.scan()
        bulk = self.store.load_all(paths, cancel=cancel)
        self.failures = bulk.failures
        self.index.store = self.store
        self.index.init(bulk.notes)
        self.store.subscribe(self.index)
        self._open = True
        logger.info("opened %s: %d notes", self.root, len(bulk.notes))

    def close(self) -> None:
        self.index.teardown()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def __enter__(self) -> Corpus:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def snapshot(self) -> GraphState:
        return self.index.snapshot()

    def resolve(self, text: str) -> Resolution:
        return self.index.find_by_title_or_alias(text)

    def backlinks(self, note_id: NoteId) -> list[Reference]:
        return self.index.backlinks_of(note_id)

    def tag(self, tag: str) -> list[NoteId]:
        return sorted(self.index.notes_with_tag(tag))

    def note(self, note_id: NoteId) -> Note:
        return self.store.get(note_id)

    def broken_links(self) -> list[Reference]:
        return self.index.broken_links()

    def warnings(self) -> list[AmbiguousLinkWarning]:
        return self.index.warnings()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def load(self, path: Path | str) -> NoteId:
        return self.store.load(path)

    def rename(self, old_path: Path | str, new_path: Path | str) -> NoteId:
        return self.store.rename(old_path, new_path)

    def delete(self, note_id: NoteId, *, unlink: bool = False) -> None:
        self.store.delete(note_id, unlink=unlink)

    def refresh(self) -> StoreDiff:
        """Pick up files changed, added or removed on disk since the last look.

        In ``lazy`` mode changed notes are only marked stale; call
        :meth:`reindex` to bring them back in.
        """
        diff = self.store.diff()
        for note_id in diff.missing:
            self.store.delete(note_id)
        for path in diff.changed + diff.added:
            try:
                self.store.load(path)
            except NoteReadError as exc:
                logger.warning("skipping unreadable note: %s", exc)
        return diff

    def reindex(self, note_id: NoteId | None = None) -> list[NoteId]:
        """Reindex one note, or every stale note when *note_id* is omitted."""
        if note_id is not None:
            self.index.reindex(note_id)
            return [note_id]
        return self.index.reindex_stale()

    def rebuild(self) -> str:
        """Corpus-wide reindex from the store; returns the index fingerprint."""
        self.index.init()
        return self.index.fingerprint()
