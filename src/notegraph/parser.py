"""WikiLink, tag, and YAML-frontmatter parser.

Everything here is a pure function of its input: the same bytes always give
the same metadata, tags and references, in document order.  Problems are
returned alongside the result instead of being raised, so one malformed link
or frontmatter block never stops the rest of a note from being extracted.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from notegraph.errors import FrontmatterError, LinkParseError, NoteReadError, ParseError
from notegraph.note import Note, NoteId, Reference, note_id_for

logger = logging.getLogger(__name__)

# YAML front-matter block; the closing fence may directly follow the opening one
_FRONTMATTER_RE = re.compile(
    r"\A---[ \t]*\r?\n(.*?)(?:\r?\n)?^---[ \t]*(?:\r?\n|\Z)",
    re.DOTALL | re.MULTILINE,
)
# Inline #tags: not preceded by an alphanumeric (URLs, hex colours)
_TAG_RE = re.compile(r"(?<![A-Za-z0-9])#([A-Za-z0-9/_-]+)")
_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_CODE_SPAN_RE = re.compile(r"(`+)(?!`)(.+?)(?<!`)\1(?!`)")
_WS_RE = re.compile(r"\s+")


def normalize_key(text: str) -> str:
    """Lookup key for titles, aliases and link targets (trimmed, case-folded)."""
    return _WS_RE.sub(" ", text).strip().casefold()


# ---------------------------------------------------------------------------
# Frontmatter
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Metadata:
    title: str | None = None
    aliases: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    #: the whole parsed mapping, including the keys above
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Ok:
    metadata: Metadata


@dataclass(frozen=True)
class Recovered:
    """Frontmatter was unusable; the note carries empty metadata."""

    metadata: Metadata
    issue: FrontmatterError


@dataclass(frozen=True)
class Failed:
    error: NoteReadError


FrontmatterResult = Ok | Recovered | Failed


def _string_list(value: Any, *, strip_hash: bool = False) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items: list[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        items = [value]
    result: list[str] = []
    for item in items:
        if item is None or isinstance(item, (dict, list)):
            continue
        text = str(item).strip()
        if strip_hash:
            text = text.lstrip("#")
        if text and text not in result:
            result.append(text)
    return result


def _metadata_from_mapping(meta: dict[str, Any]) -> Metadata:
    title = meta.get("title")
    aliases = meta.get("aliases", meta.get("alias"))
    tags = meta.get("tags", meta.get("tag"))
    return Metadata(
        title=(title.strip() or None) if isinstance(title, str) else None,
        aliases=tuple(_string_list(aliases)),
        tags=tuple(_string_list(tags, strip_hash=True)),
        raw=meta,
    )


def parse_frontmatter(content: str) -> tuple[Ok | Recovered, str]:
    """Split YAML front-matter from body text.

    Returns ``(result, body)``.  ``result`` is :class:`Ok` (possibly with empty
    metadata when there is no block) or :class:`Recovered` when the block is
    not valid YAML or not a mapping.
    """
    content = content.removeprefix("\ufeff")
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return Ok(Metadata()), content
    body = content[match.end() :]
    try:
        meta = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 2 if mark is not None else None
        return Recovered(Metadata(), FrontmatterError(f"invalid YAML frontmatter: {exc}", line=line)), body
    if meta is None:
        return Ok(Metadata()), body
    if not isinstance(meta, dict):
        issue = FrontmatterError(f"frontmatter is a {type(meta).__name__}, expected a mapping", line=1)
        return Recovered(Metadata(), issue), body
    return Ok(_metadata_from_mapping({str(k): v for k, v in meta.items()})), body


def read_frontmatter(path: Path, *, encoding: str = "utf-8") -> FrontmatterResult:
    """Frontmatter of the file at *path*, or :class:`Failed` when unreadable."""
    try:
        content = _read_text(path, encoding)
    except NoteReadError as exc:
        return Failed(exc)
    result, _ = parse_frontmatter(content)
    return result


# ---------------------------------------------------------------------------
# Body scanning
# ---------------------------------------------------------------------------


def mask_code(text: str) -> str:
    """Blank out fenced code blocks and inline code spans, keeping offsets."""
    out: list[str] = []
    fence: str | None = None
    for line in text.splitlines(keepends=True):
        m = _FENCE_RE.match(line)
        if fence is None and m:
            fence = m.group(1)[0] * 3
            out.append(_blank(line))
            continue
        if fence is not None:
            if line.lstrip(" ").startswith(fence):
                fence = None
            out.append(_blank(line))
            continue
        out.append(_CODE_SPAN_RE.sub(lambda s: " " * len(s.group(0)), line))
    return "".join(out)


def _blank(line: str) -> str:
    stripped = line.rstrip("\r\n")
    return " " * len(stripped) + line[len(stripped) :]


def _scan_wikilinks(
    text: str, source: NoteId, line_offset: int = 0
) -> tuple[list[Reference], list[ParseError], list[tuple[int, int]]]:
    refs: list[Reference] = []
    issues: list[ParseError] = []
    spans: list[tuple[int, int]] = []

    line_no = line_offset + 1
    counted_to = 0

    def line_at(offset: int) -> int:
        nonlocal line_no, counted_to
        line_no += text.count("\n", counted_to, offset)
        counted_to = offset
        return line_no

    pos = 0
    while True:
        start = text.find("[[", pos)
        if start < 0:
            break
        line = line_at(start)
        close = text.find("]]", start + 2)
        bound = close if close >= 0 else len(text)
        nested = text.find("[[", start + 2, bound)
        newline = text.find("\n", start + 2, bound)

        if newline >= 0 and (nested < 0 or newline < nested):
            issues.append(LinkParseError("unterminated [[ before end of line", line=line))
            pos = newline + 1
            continue
        if nested >= 0:
            issues.append(LinkParseError("nested [[ inside a link", line=line))
            pos = nested
            continue
        if close < 0:
            issues.append(LinkParseError("unterminated [[ at end of note", line=line))
            break

        inner = text[start + 2 : close]
        pos = close + 2
        target, sep, display = inner.partition("|")
        if sep and target.endswith("\\"):
            # escaped pipe inside a markdown table
            target = target[:-1]
        target = target.strip()
        name, _, heading = target.partition("#")
        if not name.strip():
            if heading.strip():
                # [[#Heading]] points inside the same note
                spans.append((start, pos))
            else:
                issues.append(LinkParseError("empty link target", line=line))
            continue

        embed = start > 0 and text[start - 1] == "!"
        refs.append(
            Reference(
                source=source,
                raw_target=target,
                display_text=display.strip() or None,
                heading=heading.strip() or None,
                embed=embed,
                ordinal=len(refs),
                line=line,
            )
        )
        spans.append((start - 1 if embed else start, pos))
    return refs, issues, spans


def parse_wikilinks(text: str, source: NoteId = NoteId("")) -> tuple[list[Reference], list[ParseError]]:
    """Return the ``[[WikiLink]]`` references in *text* plus any link errors.

    References are in document order and are not de-duplicated: every
    occurrence is its own :class:`Reference`.
    """
    refs, issues, _ = _scan_wikilinks(mask_code(text), source)
    return refs, issues


def link_target_name(raw_target: str) -> str:
    """The note part of a link target (``Note#Heading`` -> ``Note``)."""
    return raw_target.partition("#")[0].strip()


def parse_tags(text: str) -> list[str]:
    """Return all ``#tag`` values found in *text* (de-duped, ordered, original case)."""
    return _scan_tags(mask_code(text))


def _scan_tags(masked: str) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for m in _TAG_RE.finditer(masked):
        tag = m.group(1)
        key = tag.lower()
        if key not in seen:
            seen.add(key)
            result.append(tag)
    return result


# ---------------------------------------------------------------------------
# Whole-note extraction
# ---------------------------------------------------------------------------


@dataclass
class Extraction:
    metadata: Metadata
    body: str
    aliases: list[str]
    tags: list[str]
    tag_labels: dict[str, str]
    refs: list[Reference]
    issues: list[ParseError]
    #: number of lines (frontmatter) before the body starts
    line_offset: int = 0


def extract(content: str, source: NoteId) -> Extraction:
    """Extract aliases, tags and outbound references from a raw note."""
    fm, body = parse_frontmatter(content)
    issues: list[ParseError] = []
    if isinstance(fm, Recovered):
        issues.append(fm.issue)
    metadata = fm.metadata

    stripped = content.removeprefix("\ufeff")
    line_offset = stripped[: len(stripped) - len(body)].count("\n")
    masked = mask_code(body)
    refs, link_issues, spans = _scan_wikilinks(masked, source, line_offset)
    issues.extend(link_issues)
    # link interiors must not yield tags ([[#Heading]], [[Note#Part]])
    for start, end in reversed(spans):
        masked = masked[:start] + " " * (end - start) + masked[end:]

    tags: list[str] = []
    labels: dict[str, str] = {}
    for tag in list(metadata.tags) + _scan_tags(masked):
        key = tag.lower()
        if key not in labels:
            labels[key] = tag
            tags.append(key)

    return Extraction(
        metadata=metadata,
        body=body,
        aliases=list(metadata.aliases),
        tags=tags,
        tag_labels=labels,
        refs=refs,
        issues=issues,
        line_offset=line_offset,
    )


def _read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise NoteReadError(path, exc.strerror or str(exc)) from exc


def _decode(path: Path, data: bytes, encoding: str) -> str:
    try:
        return data.decode(encoding)
    except UnicodeDecodeError as exc:
        raise NoteReadError(path, f"not valid {encoding}: {exc.reason}") from exc


def _read_text(path: Path, encoding: str) -> str:
    return _decode(path, _read_bytes(path), encoding)


def note_from_text(
    content: str,
    path: Path | str,
    note_id: NoteId | None = None,
    *,
    root: Path | None = None,
    digest: str | None = None,
) -> Note:
    """Build a :class:`Note` for *content* as if it were stored at *path*."""
    path = Path(path)
    if note_id is None:
        note_id = note_id_for(path, root)
    ex = extract(content, note_id)
    for issue in ex.issues:
        logger.warning("%s:%s: %s", path, issue.line or "?", issue.message)

    rel = path
    if root is not None:
        try:
            rel = path.relative_to(root)
        except ValueError:
            pass

    return Note(
        id=note_id,
        path=path,
        title=ex.metadata.title or path.stem,
        body=ex.body,
        aliases=ex.aliases,
        tags=ex.tags,
        tag_labels=ex.tag_labels,
        outbound_refs=ex.refs,
        frontmatter=dict(ex.metadata.raw),
        issues=ex.issues,
        body_line=ex.line_offset + 1,
        digest=digest if digest is not None else hashlib.sha1(content.encode("utf-8")).hexdigest(),
        rel_path=rel.as_posix(),
    )


def parse_note(
    path: Path,
    note_id: NoteId | None = None,
    *,
    root: Path | None = None,
    encoding: str = "utf-8",
    source: Path | None = None,
) -> Note:
    """Read a ``.md`` file and return a fully-populated :class:`Note`.

    The content is read from *source* when given (a file about to be moved
    to *path*), otherwise from *path*.  Raises :class:`NoteReadError` when
    the file cannot be read or decoded.  Frontmatter and link problems are
    recorded on ``Note.issues``.
    """
    path = Path(path)
    source = Path(source) if source is not None else path
    data = _read_bytes(source)
    content = _decode(source, data, encoding)
    return note_from_text(content, path, note_id, root=root, digest=hashlib.sha1(data).hexdigest())
