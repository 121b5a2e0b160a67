"""Unit tests for notegraph.store.DocumentStore."""

import logging
import textwrap
import threading
from pathlib import Path

import pytest

from notegraph.config import GraphConfig
from notegraph.errors import (
    FrontmatterError,
    LoadCancelled,
    NoteNotFound,
    NoteReadError,
    StorageUnavailableError,
)
from notegraph.note import NoteId
from notegraph.store import DocumentStore, StoreListener

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _write_note(directory: Path, name: str, content: str = "") -> Path:
    path = directory / f"{name}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


class Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def on_note_loaded(self, note):
        self.events.append(("loaded", note.id))

    def on_note_renamed(self, old, note):
        self.events.append(("renamed", note.id))

    def on_note_deleted(self, note):
        self.events.append(("deleted", note.id))

    def on_bulk_loaded(self, notes):
        self.events.append(("bulk", str(len(notes))))


@pytest.fixture()
def store(tmp_path: Path) -> DocumentStore:
    return DocumentStore(tmp_path, config=GraphConfig(workers=2))


@pytest.fixture()
def recorder(store: DocumentStore) -> Recorder:
    rec = Recorder()
    store.subscribe(rec)
    return rec


# ---------------------------------------------------------------------------
# load / get
# ---------------------------------------------------------------------------


class TestLoad:
    def test_id_is_normalised_path(self, store: DocumentStore, tmp_path: Path):
        _write_note(tmp_path, "Notes/Alpha", "# Alpha\n")
        note_id = store.load(tmp_path / "Notes" / "Alpha.md")
        assert note_id == "notes/alpha"
        assert store.get(note_id).title == "Alpha"
        assert store.get(note_id).rel_path == "Notes/Alpha.md"

    def test_relative_paths_resolve_against_root(self, store: DocumentStore, tmp_path: Path):
        _write_note(tmp_path, "beta")
        assert store.load("beta.md") == "beta"

    def test_reload_reuses_id(self, store: DocumentStore, tmp_path: Path, recorder: Recorder):
        path = _write_note(tmp_path, "alpha", "v1")
        first = store.load(path)
        path.write_text("v2", encoding="utf-8")
        second = store.load(path)
        assert first == second
        assert store.get(first).body == "v2"
        assert recorder.events == [("loaded", "alpha"), ("loaded", "alpha")]

    def test_unchanged_content_is_not_reannounced(self, store: DocumentStore, tmp_path: Path, recorder: Recorder):
        path = _write_note(tmp_path, "alpha", "same")
        store.load(path)
        store.load(path)
        assert recorder.events == [("loaded", "alpha")]

    def test_unreadable_file(self, store: DocumentStore, tmp_path: Path):
        with pytest.raises(NoteReadError) as exc_info:
            store.load(tmp_path / "missing.md")
        assert isinstance(exc_info.value, OSError)
        assert len(store) == 0

    def test_malformed_frontmatter_is_not_fatal(self, store: DocumentStore, tmp_path: Path, caplog):
        path = _write_note(tmp_path, "bad", "---\naliases: [oops\n---\nSee [[Other]] #kept\n")
        with caplog.at_level(logging.WARNING, logger="notegraph"):
            note_id = store.load(path)
        note = store.get(note_id)
        assert note.aliases == []
        assert note.tags == ["kept"]
        assert [r.raw_target for r in note.outbound_refs] == ["Other"]
        assert isinstance(note.issues[0], FrontmatterError)
        assert "invalid YAML frontmatter" in caplog.text

    def test_get_unknown(self, store: DocumentStore):
        with pytest.raises(NoteNotFound):
            store.get(NoteId("nope"))
        with pytest.raises(KeyError):
            store.get(NoteId("nope"))

    def test_recorder_satisfies_protocol(self, recorder: Recorder):
        assert isinstance(recorder, StoreListener)


# ---------------------------------------------------------------------------
# rename / delete
# ---------------------------------------------------------------------------


class TestRename:
    def test_moves_file_and_keeps_id(self, store: DocumentStore, tmp_path: Path, recorder: Recorder):
        old = _write_note(tmp_path, "draft", "body")
        note_id = store.load(old)
        new_id = store.rename(old, tmp_path / "archive" / "final.md")
        assert new_id == note_id
        assert not old.exists()
        assert (tmp_path / "archive" / "final.md").exists()
        note = store.get(note_id)
        assert note.title == "final"
        assert note.rel_path == "archive/final.md"
        assert store.id_for("archive/final.md") == note_id
        with pytest.raises(NoteNotFound):
            store.id_for(old)
        assert recorder.events[-1] == ("renamed", note_id)

    def test_file_already_moved(self, store: DocumentStore, tmp_path: Path):
        old = _write_note(tmp_path, "a")
        note_id = store.load(old)
        old.rename(tmp_path / "b.md")
        assert store.rename(old, tmp_path / "b.md") == note_id
        assert store.get(note_id).title == "b"

    def test_target_taken(self, store: DocumentStore, tmp_path: Path):
        a = _write_note(tmp_path, "a")
        b = _write_note(tmp_path, "b")
        store.load(a)
        store.load(b)
        with pytest.raises(FileExistsError):
            store.rename(a, b)
        assert a.exists()

    def test_unreadable_note_is_not_moved(self, store: DocumentStore, tmp_path: Path, recorder: Recorder):
        old = _write_note(tmp_path, "a", "fine")
        note_id = store.load(old)
        old.write_bytes(b"\xff\xfe bad")

        with pytest.raises(NoteReadError):
            store.rename(old, tmp_path / "b.md")

        assert old.exists()
        assert not (tmp_path / "b.md").exists()
        assert store.get(note_id).rel_path == "a.md"
        assert store.id_for(old) == note_id
        assert recorder.events == [("loaded", "a")]
        diff = store.diff()
        assert diff.changed == [old]
        assert diff.added == []
        assert diff.missing == []

    def test_unknown_source(self, store: DocumentStore, tmp_path: Path):
        with pytest.raises(NoteNotFound):
            store.rename(tmp_path / "x.md", tmp_path / "y.md")

    def test_old_path_reused_gets_fresh_id(self, store: DocumentStore, tmp_path: Path):
        a = _write_note(tmp_path, "a")
        moved = store.load(a)
        store.rename(a, tmp_path / "b.md")
        _write_note(tmp_path, "a", "new note")
        fresh = store.load(a)
        assert fresh != moved
        assert fresh == "a~2"
        assert store.get(moved).rel_path == "b.md"


class TestDelete:
    def test_delete_keeps_file_by_default(self, store: DocumentStore, tmp_path: Path, recorder: Recorder):
        path = _write_note(tmp_path, "gone")
        note_id = store.load(path)
        store.delete(note_id)
        assert note_id not in store
        assert path.exists()
        assert recorder.events[-1] == ("deleted", note_id)
        with pytest.raises(NoteNotFound):
            store.id_for(path)

    def test_delete_unlink(self, store: DocumentStore, tmp_path: Path):
        path = _write_note(tmp_path, "gone")
        store.delete(store.load(path), unlink=True)
        assert not path.exists()

    def test_delete_unknown(self, store: DocumentStore):
        with pytest.raises(NoteNotFound):
            store.delete(NoteId("nope"))


# ---------------------------------------------------------------------------
# scan / load_all / diff
# ---------------------------------------------------------------------------


class TestScan:
    def test_sorted_and_filtered(self, store: DocumentStore, tmp_path: Path):
        _write_note(tmp_path, "b")
        _write_note(tmp_path, "a")
        _write_note(tmp_path, "sub/c")
        _write_note(tmp_path, ".obsidian/workspace")
        (tmp_path / "readme.txt").write_text("not a note", encoding="utf-8")
        rel = [p.relative_to(tmp_path).as_posix() for p in store.scan()]
        assert rel == ["a.md", "b.md", "sub/c.md"]

    def test_missing_root_is_fatal(self, tmp_path: Path):
        store = DocumentStore(tmp_path / "nowhere")
        with pytest.raises(StorageUnavailableError):
            store.scan()


class TestLoadAll:
    def test_parallel_load_collects_failures(self, store: DocumentStore, tmp_path: Path, recorder: Recorder):
        for i in range(10):
            _write_note(tmp_path, f"n{i:02d}", f"[[n{(i + 1) % 10:02d}]]")
        (tmp_path / "binary.md").write_bytes(b"\xff\xfe\xfa")
        bulk = store.load_all(store.scan(), workers=4)
        assert len(bulk.notes) == 10
        assert [f.path.name for f in bulk.failures] == ["binary.md"]
        assert len(store) == 10
        assert recorder.events == [("bulk", "10")]

    def test_cancelled_load_commits_nothing(self, store: DocumentStore, tmp_path: Path, recorder: Recorder):
        for i in range(5):
            _write_note(tmp_path, f"n{i}")
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(LoadCancelled):
            store.load_all(store.scan(), cancel=cancel)
        assert len(store) == 0
        assert recorder.events == []

    def test_ids_are_stable_across_loads(self, store: DocumentStore, tmp_path: Path):
        _write_note(tmp_path, "Alpha")
        store.load_all(store.scan())
        store.load_all(store.scan())
        assert [n.id for n in store] == ["alpha"]


class TestDiff:
    def test_changed_added_missing(self, store: DocumentStore, tmp_path: Path):
        keep = _write_note(tmp_path, "keep", "same")
        edit = _write_note(tmp_path, "edit", "v1")
        gone = _write_note(tmp_path, "gone")
        store.load_all(store.scan())

        edit.write_text("v2", encoding="utf-8")
        gone.unlink()
        added = _write_note(tmp_path, "added")

        diff = store.diff()
        assert diff.changed == [edit]
        assert diff.added == [added]
        assert diff.missing == ["gone"]
        assert keep not in diff.changed

    def test_clean_store_has_empty_diff(self, store: DocumentStore, tmp_path: Path):
        _write_note(tmp_path, "a")
        store.load_all(store.scan())
        assert not store.diff()
