"""GraphIndex: in-memory bidirectional link graph and tag index.

All derived structures live in one :class:`GraphState`.  A mutation copies the
current state, applies the change to the copy and then swaps the reference
under a single write lock, so readers holding a snapshot never observe a
half-applied upsert.  Values inside a state (frozensets, tuples, frozen
entries) are never mutated in place; they are replaced.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Iterable

from notegraph.errors import AmbiguousLinkWarning, IndexConsistencyError, NoteNotFound
from notegraph.note import Note, NoteId, NoteState, Reference
from notegraph.parser import link_target_name, normalize_key

if TYPE_CHECKING:
    from notegraph.store import DocumentStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Resolution results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Resolved:
    note_id: NoteId


@dataclass(frozen=True)
class Ambiguous:
    #: every matching note, ordered by path
    candidates: tuple[NoteId, ...]


@dataclass(frozen=True)
class NotFound:
    text: str


Resolution = Resolved | Ambiguous | NotFound


def path_key(target: str) -> str:
    """Key for matching a link target against note paths."""
    key = normalize_key(target.replace("\\", "/")).strip("/")
    return key.removesuffix(".md")


def _path_suffixes(sort_path: str) -> list[str]:
    parts = path_key(sort_path).split("/")
    return ["/".join(parts[i:]) for i in range(len(parts))]


def _ref_keys(ref: Reference) -> frozenset[str]:
    name = link_target_name(ref.raw_target)
    return frozenset({normalize_key(name), path_key(name)})


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoteEntry:
    """What the index keeps about one note: lookup keys and resolved refs."""

    id: NoteId
    title: str
    sort_path: str
    aliases: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    refs: tuple[Reference, ...] = ()
    warnings: tuple[AmbiguousLinkWarning, ...] = ()

    @property
    def title_key(self) -> str:
        return normalize_key(self.title)

    @property
    def alias_keys(self) -> frozenset[str]:
        return frozenset(normalize_key(a) for a in self.aliases)

    @property
    def path_keys(self) -> frozenset[str]:
        return frozenset(_path_suffixes(self.sort_path))

    @property
    def lookup_keys(self) -> frozenset[str]:
        return self.path_keys | self.alias_keys | {self.title_key}

    @classmethod
    def from_note(cls, note: Note) -> NoteEntry:
        return cls(
            id=note.id,
            title=note.title,
            sort_path=note.sort_path,
            aliases=tuple(note.aliases),
            tags=tuple(note.tags),
        )


def _discard(mapping: dict[str, frozenset[NoteId]], key: str, note_id: NoteId) -> None:
    ids = mapping.get(key)
    if ids is None or note_id not in ids:
        return
    remaining = ids - {note_id}
    if remaining:
        mapping[key] = remaining
    else:
        del mapping[key]


def _add(mapping: dict[str, frozenset[NoteId]], key: str, note_id: NoteId) -> None:
    mapping[key] = mapping.get(key, frozenset()) | {note_id}


@dataclass
class GraphState:
    """One consistent version of the index.  Treat a published state as read-only."""

    entries: dict[NoteId, NoteEntry] = field(default_factory=dict)
    states: dict[NoteId, NoteState] = field(default_factory=dict)
    titles: dict[str, frozenset[NoteId]] = field(default_factory=dict)
    aliases: dict[str, frozenset[NoteId]] = field(default_factory=dict)
    paths: dict[str, frozenset[NoteId]] = field(default_factory=dict)
    tags: dict[str, frozenset[NoteId]] = field(default_factory=dict)
    #: target -> source -> refs of that source resolving to target
    backlinks: dict[NoteId, dict[NoteId, tuple[Reference, ...]]] = field(default_factory=dict)
    #: lookup key -> notes with a ref using that key (resolved or not)
    refs_by_key: dict[str, frozenset[NoteId]] = field(default_factory=dict)

    def copy(self) -> GraphState:
        return GraphState(
            entries=dict(self.entries),
            states=dict(self.states),
            titles=dict(self.titles),
            aliases=dict(self.aliases),
            paths=dict(self.paths),
            tags=dict(self.tags),
            backlinks=dict(self.backlinks),
            refs_by_key=dict(self.refs_by_key),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _order(self, ids: Iterable[NoteId]) -> tuple[NoteId, ...]:
        return tuple(sorted(ids, key=lambda i: (self.entries[i].sort_path.casefold(), i)))

    def candidates(self, text: str) -> tuple[NoteId, ...]:
        """Notes matching *text*: titles first, then aliases, then paths."""
        name = link_target_name(text)
        key = normalize_key(name)
        ids = self.titles.get(key) or self.aliases.get(key) or self.paths.get(path_key(name))
        return self._order(ids) if ids else ()

    def find_by_title_or_alias(self, text: str) -> Resolution:
        found = self.candidates(text)
        if not found:
            return NotFound(text)
        if len(found) == 1:
            return Resolved(found[0])
        return Ambiguous(found)

    def entry(self, note_id: NoteId) -> NoteEntry:
        try:
            return self.entries[note_id]
        except KeyError:
            raise NoteNotFound(note_id) from None

    def backlinks_of(self, note_id: NoteId) -> list[Reference]:
        """References resolving to *note_id*, by source title then occurrence."""
        if note_id not in self.entries:
            raise NoteNotFound(note_id)
        by_source = self.backlinks.get(note_id, {})
        ordered = sorted(
            by_source,
            key=lambda s: (self.entries[s].title.casefold(), self.entries[s].sort_path.casefold(), s),
        )
        return [ref for source in ordered for ref in by_source[source]]

    def outbound(self, note_id: NoteId) -> tuple[Reference, ...]:
        return self.entry(note_id).refs

    def notes_with_tag(self, tag: str) -> frozenset[NoteId]:
        return self.tags.get(tag.lstrip("#").lower(), frozenset())

    def broken_links(self) -> list[Reference]:
        return [
            ref
            for note_id in self._order(self.entries)
            for ref in self.entries[note_id].refs
            if ref.resolved is None
        ]

    def warnings(self) -> list[AmbiguousLinkWarning]:
        return [w for note_id in self._order(self.entries) for w in self.entries[note_id].warnings]

    def state_of(self, note_id: NoteId) -> NoteState:
        return self.states.get(note_id, NoteState.UNLOADED)

    def dump(self) -> dict[str, Any]:
        """Canonical, sorted, JSON-ready view of the whole index."""
        return {
            "notes": {
                note_id: {
                    "title": e.title,
                    "path": e.sort_path,
                    "aliases": list(e.aliases),
                    "tags": list(e.tags),
                    "state": self.state_of(note_id).value,
                    "refs": [r.to_dict() for r in e.refs],
                }
                for note_id, e in sorted(self.entries.items())
            },
            "backlinks": {
                target: [[r.source, r.ordinal] for r in self.backlinks_of(target)]
                for target in sorted(self.backlinks)
            },
            "tags": {tag: sorted(ids) for tag, ids in sorted(self.tags.items())},
        }

    def fingerprint(self) -> str:
        payload = json.dumps(self.dump(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    # ------------------------------------------------------------------
    # Mutation helpers (only ever applied to a private copy)
    # ------------------------------------------------------------------

    def _register(self, entry: NoteEntry) -> None:
        self.entries[entry.id] = entry
        _add(self.titles, entry.title_key, entry.id)
        for key in entry.alias_keys:
            _add(self.aliases, key, entry.id)
        for key in entry.path_keys:
            _add(self.paths, key, entry.id)
        for tag in entry.tags:
            _add(self.tags, tag, entry.id)

    def _detach(self, entry: NoteEntry, *, incoming: bool) -> None:
        """Drop *entry*'s keys, tags and outbound refs; with *incoming* also
        the backlinks pointing at it."""
        _discard(self.titles, entry.title_key, entry.id)
        for key in entry.alias_keys:
            _discard(self.aliases, key, entry.id)
        for key in entry.path_keys:
            _discard(self.paths, key, entry.id)
        for tag in entry.tags:
            _discard(self.tags, tag, entry.id)
        self._set_refs(entry.id, entry.refs, ())
        if incoming:
            self.backlinks.pop(entry.id, None)
        del self.entries[entry.id]

    def _set_refs(self, source: NoteId, old: tuple[Reference, ...], new: tuple[Reference, ...]) -> None:
        for ref in old:
            for key in _ref_keys(ref):
                _discard(self.refs_by_key, key, source)
            if ref.resolved is not None and ref.resolved in self.backlinks:
                inner = dict(self.backlinks[ref.resolved])
                inner.pop(source, None)
                if inner:
                    self.backlinks[ref.resolved] = inner
                else:
                    del self.backlinks[ref.resolved]

        grouped: dict[NoteId, list[Reference]] = {}
        for ref in new:
            for key in _ref_keys(ref):
                _add(self.refs_by_key, key, source)
            if ref.resolved is not None:
                grouped.setdefault(ref.resolved, []).append(ref)
        for target, refs in grouped.items():
            inner = dict(self.backlinks.get(target, {}))
            inner[source] = tuple(refs)
            self.backlinks[target] = inner

    def _resolve(
        self, source: NoteId, refs: Iterable[Reference]
    ) -> tuple[tuple[Reference, ...], tuple[AmbiguousLinkWarning, ...]]:
        resolved: list[Reference] = []
        warnings: list[AmbiguousLinkWarning] = []
        for ref in refs:
            found = self.candidates(ref.raw_target)
            target = found[0] if found else None
            if len(found) > 1:
                warnings.append(AmbiguousLinkWarning(source, ref.raw_target, found[0], found))
            resolved.append(ref.resolve_to(target))
        return tuple(resolved), tuple(warnings)

    def _link(self, source: NoteId, raw_refs: Iterable[Reference]) -> NoteEntry:
        entry = self.entries[source]
        refs, warnings = self._resolve(source, raw_refs)
        self._set_refs(source, (), refs)
        entry = replace(entry, refs=refs, warnings=warnings)
        self.entries[source] = entry
        return entry

    def _reresolve(self, keys: frozenset[str], skip: NoteId | None = None) -> list[AmbiguousLinkWarning]:
        """Re-resolve the refs of every note that links through one of *keys*.

        Returns the ambiguity warnings that were not already recorded.
        """
        sources: set[NoteId] = set()
        for key in keys:
            sources |= self.refs_by_key.get(key, frozenset())
        sources.discard(skip)  # type: ignore[arg-type]
        new_warnings: list[AmbiguousLinkWarning] = []
        for source in sorted(sources):
            entry = self.entries[source]
            refs, warnings = self._resolve(source, entry.refs)
            if refs == entry.refs and warnings == entry.warnings:
                continue
            new_warnings.extend(w for w in warnings if w not in entry.warnings)
            self._set_refs(source, entry.refs, refs)
            self.entries[source] = replace(entry, refs=refs, warnings=warnings)
        return new_warnings


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------


class GraphIndex:
    """Owns the current :class:`GraphState` and serialises writes to it.

    When constructed with a :class:`~notegraph.store.DocumentStore` the index
    subscribes to it, follows loads, renames and deletes, and can pull note
    content back for :meth:`reindex`.
    """

    def __init__(
        self,
        store: "DocumentStore | None" = None,
        *,
        state: GraphState | None = None,
        reindex: str = "eager",
    ) -> None:
        self._state = state if state is not None else GraphState()
        self._write_lock = threading.Lock()
        self.store = store
        self.reindex_mode = reindex
        if store is not None:
            store.subscribe(self)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, notes: Iterable[Note] | None = None) -> None:
        """Build the index from *notes* (or everything in the store)."""
        if notes is None:
            notes = list(self.store) if self.store is not None else []
        self.rebuild(notes)

    def teardown(self) -> None:
        if self.store is not None:
            self.store.unsubscribe(self)
        with self._write_lock:
            self._state = GraphState()

    def snapshot(self) -> GraphState:
        """The current state; safe to query while writers proceed."""
        return self._state

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, note: Note) -> list[AmbiguousLinkWarning]:
        """Replace everything the index knows about *note* in one step.

        Returns the note's own ambiguity warnings followed by any new ones
        raised in other notes whose links were re-resolved.
        """
        with self._write_lock:
            s = self._state.copy()
            old = s.entries.get(note.id)
            if old is not None:
                s._detach(old, incoming=False)
            fresh = NoteEntry.from_note(note)
            s._register(fresh)
            entry = s._link(note.id, note.outbound_refs)
            if old is None:
                changed = fresh.lookup_keys
            elif (old.title_key, old.alias_keys, old.sort_path) != (
                fresh.title_key,
                fresh.alias_keys,
                fresh.sort_path,
            ):
                # a key kept across the edit may still move between tiers,
                # and the path is also the ambiguity tie-break
                changed = fresh.lookup_keys | old.lookup_keys
            else:
                changed = frozenset()
            others = s._reresolve(changed, skip=note.id) if changed else []
            s.states[note.id] = NoteState.LOADED
            self._state = s
        warnings = list(entry.warnings) + others
        for warning in warnings:
            logger.warning("%s", warning)
        return warnings

    def remove(self, note_id: NoteId) -> None:
        """Drop a note; links to it elsewhere stay, now broken."""
        with self._write_lock:
            s = self._state.copy()
            old = s.entries.get(note_id)
            others: list[AmbiguousLinkWarning] = []
            if old is None:
                if note_id not in s.states:
                    raise NoteNotFound(note_id)
            else:
                s._detach(old, incoming=True)
                others = s._reresolve(old.lookup_keys)
            s.states[note_id] = NoteState.REMOVED
            self._state = s
        for warning in others:
            logger.warning("%s", warning)

    def mark_stale(self, note_id: NoteId) -> None:
        with self._write_lock:
            s = self._state.copy()
            s.states[note_id] = NoteState.STALE
            self._state = s

    def reindex(self, note_id: NoteId) -> list[AmbiguousLinkWarning]:
        """Re-derive a note from the store's current content."""
        if self.store is None:
            raise RuntimeError("reindex needs a DocumentStore")
        if note_id not in self.store:
            if note_id in self._state.entries:
                self.remove(note_id)
                return []
            raise NoteNotFound(note_id)
        return self.upsert(self.store.get(note_id))

    def reindex_stale(self) -> list[NoteId]:
        stale = sorted(i for i, st in self._state.states.items() if st is NoteState.STALE)
        for note_id in stale:
            self.reindex(note_id)
        return stale

    def rebuild(self, notes: Iterable[Note]) -> None:
        """Replace the whole index with one built from *notes*.

        Every key is registered before any ref is resolved, so the result does
        not depend on the order of *notes*.  Nothing is visible until the
        final swap.
        """
        notes = sorted(notes, key=lambda n: n.id)
        s = GraphState()
        for note in notes:
            s._register(NoteEntry.from_note(note))
        for note in notes:
            s._link(note.id, note.outbound_refs)
            s.states[note.id] = NoteState.LOADED
        with self._write_lock:
            self._state = s
        logger.info("index built: %d notes, %d tags", len(s.entries), len(s.tags))

    # ------------------------------------------------------------------
    # Store listener hooks
    # ------------------------------------------------------------------

    def on_note_loaded(self, note: Note) -> None:
        if self.reindex_mode == "lazy":
            self.mark_stale(note.id)
        else:
            self.upsert(note)

    def on_note_renamed(self, old: Note, note: Note) -> None:
        self.upsert(note)

    def on_note_deleted(self, note: Note) -> None:
        if note.id in self._state.states:
            self.remove(note.id)

    def on_bulk_loaded(self, notes: list[Note]) -> None:
        self.init()

    # ------------------------------------------------------------------
    # Reads (each against one snapshot)
    # ------------------------------------------------------------------

    def backlinks_of(self, note_id: NoteId) -> list[Reference]:
        return self._state.backlinks_of(note_id)

    def notes_with_tag(self, tag: str) -> frozenset[NoteId]:
        return self._state.notes_with_tag(tag)

    def find_by_title_or_alias(self, text: str) -> Resolution:
        return self._state.find_by_title_or_alias(text)

    def outbound(self, note_id: NoteId) -> tuple[Reference, ...]:
        return self._state.outbound(note_id)

    def broken_links(self) -> list[Reference]:
        return self._state.broken_links()

    def warnings(self) -> list[AmbiguousLinkWarning]:
        return self._state.warnings()

    def state_of(self, note_id: NoteId) -> NoteState:
        return self._state.state_of(note_id)

    def dump(self) -> dict[str, Any]:
        return self._state.dump()

    def fingerprint(self) -> str:
        return self._state.fingerprint()

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def verify(self) -> None:
        """Check the derived maps against the entries' outbound refs."""
        s = self._state
        expected_backlinks: dict[NoteId, dict[NoteId, tuple[Reference, ...]]] = {}
        expected_tags: dict[str, set[NoteId]] = {}
        for note_id, entry in s.entries.items():
            grouped: dict[NoteId, list[Reference]] = {}
            for ref in entry.refs:
                if ref.source != note_id:
                    raise IndexConsistencyError(f"{note_id} holds a ref from {ref.source}")
                if ref.resolved is not None:
                    if ref.resolved not in s.entries:
                        raise IndexConsistencyError(f"{note_id} resolves to missing note {ref.resolved}")
                    grouped.setdefault(ref.resolved, []).append(ref)
            for target, refs in grouped.items():
                expected_backlinks.setdefault(target, {})[note_id] = tuple(refs)
            for tag in entry.tags:
                expected_tags.setdefault(tag, set()).add(note_id)

        if expected_backlinks != s.backlinks:
            raise IndexConsistencyError("backlink map differs from outbound references")
        if {t: frozenset(ids) for t, ids in expected_tags.items()} != s.tags:
            raise IndexConsistencyError("tag index differs from note tags")
        for note_id, entry in s.entries.items():
            refs, _ = s._resolve(note_id, entry.refs)
            if refs != entry.refs:
                raise IndexConsistencyError(f"{note_id} has stale link resolution")
