"""Error and warning taxonomy.

Only :class:`StorageUnavailableError` is fatal to a whole corpus.  Everything
else is scoped to a single note or a single link and is either raised to the
caller of the one operation that hit it (:class:`NoteReadError`) or recorded
on the note / index and logged (:class:`FrontmatterError`,
:class:`LinkParseError`, :class:`AmbiguousLinkWarning`).

A broken link is not an error at all: it is a :class:`~notegraph.note.Reference`
whose ``resolved`` field is ``None``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class NoteGraphError(Exception):
    """Base class for every error raised by notegraph."""


class StorageUnavailableError(NoteGraphError):
    """The vault root cannot be enumerated at all."""


class NoteReadError(NoteGraphError, OSError):
    """A single note file could not be read or decoded."""

    def __init__(self, path: "Path", reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class NoteNotFound(NoteGraphError, KeyError):
    """No note with the given id (or path) is known."""

    def __str__(self) -> str:
        return f"note not found: {self.args[0]!r}" if self.args else "note not found"


class LoadCancelled(NoteGraphError):
    """A bulk load was abandoned before its commit phase."""


class IndexConsistencyError(NoteGraphError):
    """The derived backlink or tag structures drifted from the outbound refs."""


# ---------------------------------------------------------------------------
# Recovered parse problems
# ---------------------------------------------------------------------------


class ParseError(NoteGraphError):
    """A recoverable problem found while parsing one note."""

    def __init__(self, message: str, *, line: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.line = line

    def __eq__(self, other: object) -> bool:
        return (
            type(other) is type(self)
            and other.message == self.message  # type: ignore[attr-defined]
            and other.line == self.line  # type: ignore[attr-defined]
        )

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.message, self.line))


class FrontmatterError(ParseError):
    """The YAML frontmatter block is malformed; the note keeps empty metadata."""


class LinkParseError(ParseError):
    """One ``[[...]]`` occurrence is malformed; it is skipped."""


class AmbiguousLinkWarning(UserWarning):
    """A link target matched more than one note.

    Resolution still picks the note with the lexicographically first path;
    this warning records the choice and the alternatives.
    """

    def __init__(self, source: str, raw_target: str, chosen: str, candidates: tuple[str, ...]) -> None:
        super().__init__(
            f"{source}: [[{raw_target}]] is ambiguous, chose {chosen!r} of {list(candidates)!r}"
        )
        self.source = source
        self.raw_target = raw_target
        self.chosen = chosen
        self.candidates = candidates

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AmbiguousLinkWarning):
            return NotImplemented
        return (self.source, self.raw_target, self.chosen, self.candidates) == (
            other.source,
            other.raw_target,
            other.chosen,
            other.candidates,
        )

    def __hash__(self) -> int:
        return hash((self.source, self.raw_target, self.chosen, self.candidates))
