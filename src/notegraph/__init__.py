"""notegraph: wikilink / alias / tag graph index for Markdown vaults."""

from notegraph.config import GraphConfig, configure_logging, load_config
from notegraph.corpus import Corpus
from notegraph.errors import (
    AmbiguousLinkWarning,
    FrontmatterError,
    LinkParseError,
    NoteGraphError,
    NoteNotFound,
    NoteReadError,
    ParseError,
    StorageUnavailableError,
)
from notegraph.index import Ambiguous, GraphIndex, GraphState, NotFound, Resolved
from notegraph.note import Note, NoteId, NoteState, Reference
from notegraph.parser import extract, parse_note, parse_tags, parse_wikilinks
from notegraph.store import DocumentStore

__all__ = [
    "Ambiguous",
    "AmbiguousLinkWarning",
    "Corpus",
    "DocumentStore",
    "FrontmatterError",
    "GraphConfig",
    "GraphIndex",
    "GraphState",
    "LinkParseError",
    "Note",
    "NoteGraphError",
    "NoteId",
    "NoteNotFound",
    "NoteReadError",
    "NoteState",
    "NotFound",
    "ParseError",
    "Reference",
    "Resolved",
    "StorageUnavailableError",
    "configure_logging",
    "extract",
    "load_config",
    "parse_note",
    "parse_tags",
    "parse_wikilinks",
]
