"""GraphDB: SQL view over an index snapshot.

Uses DuckDB (in-memory) as a query engine over the notes, their references
(broken ones included) and the tag index.  Returns :mod:`polars` DataFrames.

Usage::

    db = GraphDB(corpus.snapshot())

    # Free-form SQL
    df = db.query("SELECT source, raw_target FROM refs WHERE resolved IS NULL")

    # Pre-built views
    broken = db.broken_links()
    hubs   = db.most_linked(limit=10)
    counts = db.tag_counts()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import duckdb
import polars as pl

if TYPE_CHECKING:
    from notegraph.index import GraphState


class GraphDB:
    """In-memory DuckDB database over one :class:`GraphState`."""

    def __init__(self, state: "GraphState") -> None:
        self.conn: duckdb.DuckDBPyConnection = duckdb.connect(":memory:")
        self.refresh(state)

    # ------------------------------------------------------------------
    # Build / refresh
    # ------------------------------------------------------------------

    def refresh(self, state: "GraphState") -> None:
        """(Re-)populate the database from *state* (call after index changes)."""
        self._state = state
        self._create_schema()
        self._load()

    def _create_schema(self) -> None:
        self.conn.execute("""
            CREATE OR REPLACE TABLE notes (
                id      VARCHAR PRIMARY KEY,
                title   VARCHAR,
                path    VARCHAR,
                aliases VARCHAR[],
                tags    VARCHAR[]
            )
        """)
        self.conn.execute("""
            CREATE OR REPLACE TABLE refs (
                source       VARCHAR,
                ordinal      INTEGER,
                raw_target   VARCHAR,
                display_text VARCHAR,
                heading      VARCHAR,
                embed        BOOLEAN,
                line         INTEGER,
                resolved     VARCHAR
            )
        """)
        self.conn.execute("""
            CREATE OR REPLACE TABLE tags (
                tag     VARCHAR,
                note_id VARCHAR
            )
        """)

    def _load(self) -> None:
        entries = sorted(self._state.entries.items())
        notes = [(i, e.title, e.sort_path, list(e.aliases), list(e.tags)) for i, e in entries]
        refs = [
            (r.source, r.ordinal, r.raw_target, r.display_text, r.heading, r.embed, r.line, r.resolved)
            for _, e in entries
            for r in e.refs
        ]
        tags = [(tag, i) for tag, ids in sorted(self._state.tags.items()) for i in sorted(ids)]
        if notes:
            self.conn.executemany("INSERT INTO notes VALUES (?,?,?,?,?)", notes)
        if refs:
            self.conn.executemany("INSERT INTO refs VALUES (?,?,?,?,?,?,?,?)", refs)
        if tags:
            self.conn.executemany("INSERT INTO tags VALUES (?,?)", tags)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def query(self, sql: str, params: list[object] | None = None) -> pl.DataFrame:
        """Run a SQL query and return a Polars DataFrame."""
        return self.conn.execute(sql, params or []).pl()

    # ------------------------------------------------------------------
    # Pre-built views
    # ------------------------------------------------------------------

    def broken_links(self) -> pl.DataFrame:
        """Unresolved references with the title of the note they sit in."""
        return self.query(
            """
            SELECT r.source, n.title AS source_title, r.raw_target, r.line
            FROM refs r JOIN notes n ON n.id = r.source
            WHERE r.resolved IS NULL
            ORDER BY r.raw_target, n.path, r.ordinal
            """
        )

    def most_linked(self, limit: int = 10) -> pl.DataFrame:
        """Notes ranked by number of incoming references."""
        return self.query(
            """
            SELECT n.id, n.title, COUNT(*) AS backlinks, COUNT(DISTINCT r.source) AS sources
            FROM refs r JOIN notes n ON n.id = r.resolved
            GROUP BY n.id, n.title
            ORDER BY backlinks DESC, n.id
            LIMIT ?
            """,
            [limit],
        )

    def tag_counts(self) -> pl.DataFrame:
        """Return a tag → count table sorted by frequency."""
        return self.query(
            """
            SELECT tag, COUNT(*) AS note_count
            FROM tags
            GROUP BY tag
            ORDER BY note_count DESC, tag
            """
        )

    def schema_info(self) -> pl.DataFrame:
        """Return DuckDB DESCRIBE output for the refs table."""
        return self.query("DESCRIBE refs")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "GraphDB":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
