"""Core Note and Reference dataclasses."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePath
from typing import TYPE_CHECKING, Any, NewType

if TYPE_CHECKING:
    from notegraph.errors import ParseError

#: Stable identifier: root-relative POSIX path, extension stripped, case-folded.
NoteId = NewType("NoteId", str)

NOTE_SUFFIX = ".md"


def note_id_for(path: PurePath | str, root: PurePath | str | None = None) -> NoteId:
    """Derive the :data:`NoteId` for *path* (relative to *root* when given)."""
    p = PurePath(path)
    if root is not None:
        try:
            p = p.relative_to(root)
        except ValueError:
            pass
    if p.suffix.lower() == NOTE_SUFFIX:
        p = p.with_suffix("")
    return NoteId(p.as_posix().casefold())


class NoteState(enum.Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"
    STALE = "stale"
    REMOVED = "removed"


@dataclass(frozen=True)
class Reference:
    """One ``[[wikilink]]`` occurrence in a source note."""

    source: NoteId
    raw_target: str
    display_text: str | None = None
    #: ``Note#Heading`` part after the ``#``, if any
    heading: str | None = None
    #: ``![[...]]`` transclusion rather than a plain link
    embed: bool = False
    #: 0-based occurrence index within the source note
    ordinal: int = 0
    #: 1-based line in the note body
    line: int = 1
    #: ``None`` means the link is broken
    resolved: NoteId | None = None

    @property
    def is_broken(self) -> bool:
        return self.resolved is None

    def resolve_to(self, note_id: NoteId | None) -> "Reference":
        if note_id == self.resolved:
            return self
        return replace(self, resolved=note_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "raw_target": self.raw_target,
            "display_text": self.display_text,
            "heading": self.heading,
            "embed": self.embed,
            "ordinal": self.ordinal,
            "line": self.line,
            "resolved": self.resolved,
        }


@dataclass
class Note:
    """A single markdown note in the vault."""

    id: NoteId
    path: Path
    title: str
    body: str
    aliases: list[str] = field(default_factory=list)
    #: Lower-cased, de-duplicated; frontmatter tags first, then inline ones
    tags: list[str] = field(default_factory=list)
    #: lower-cased tag -> first-seen original casing, for display
    tag_labels: dict[str, str] = field(default_factory=dict)
    outbound_refs: list[Reference] = field(default_factory=list)
    frontmatter: dict[str, Any] = field(default_factory=dict)
    issues: list["ParseError"] = field(default_factory=list)
    digest: str = ""
    #: 1-based file line on which ``body`` starts (after any frontmatter)
    body_line: int = 1
    #: Root-relative POSIX path with extension; the ambiguity tie-break key
    rel_path: str = ""

    @property
    def slug(self) -> str:
        """Filename stem, original casing."""
        return self.path.stem

    @property
    def sort_path(self) -> str:
        return self.rel_path or self.path.as_posix()

    def line(self, line_no: int) -> str:
        """Text of file line *line_no* within the body, or ``""``."""
        lines = self.body.splitlines()
        idx = line_no - self.body_line
        return lines[idx] if 0 <= idx < len(lines) else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "path": self.sort_path,
            "title": self.title,
            "aliases": self.aliases,
            "tags": self.tags,
            "refs": [r.to_dict() for r in self.outbound_refs],
            "frontmatter": self.frontmatter,
        }
