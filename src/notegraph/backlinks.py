"""Backlink rows for a "linked mentions" panel.

Shows every reference that points *to* a note, with the line it occurs on.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from notegraph.errors import NoteNotFound

if TYPE_CHECKING:
    from notegraph.corpus import Corpus
    from notegraph.note import NoteId


def backlink_rows(corpus: "Corpus", note_id: "NoteId") -> list[dict[str, Any]]:
    """Return one ``{source, title, raw_target, display_text, line, context}``
    dict per reference to *note_id*, in backlink order."""
    snapshot = corpus.snapshot()
    rows: list[dict[str, Any]] = []
    for ref in snapshot.backlinks_of(note_id):
        try:
            context = corpus.note(ref.source).line(ref.line).strip()
        except NoteNotFound:
            context = ""
        rows.append(
            {
                "source": ref.source,
                "title": snapshot.entries[ref.source].title,
                "raw_target": ref.raw_target,
                "display_text": ref.display_text,
                "line": ref.line,
                "context": context,
            }
        )
    return rows


def linked_sources(corpus: "Corpus", note_id: "NoteId") -> list[dict[str, str]]:
    """Distinct notes linking to *note_id* as ``{source, title}`` dicts."""
    seen: dict[str, str] = {}
    for row in backlink_rows(corpus, note_id):
        seen.setdefault(row["source"], row["title"])
    return [{"source": s, "title": t} for s, t in seen.items()]
