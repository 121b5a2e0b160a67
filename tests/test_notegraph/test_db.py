"""Unit tests for notegraph.db.GraphDB."""

import textwrap

import duckdb
import polars as pl
import pytest

from notegraph.db import GraphDB
from notegraph.index import GraphIndex, GraphState
from notegraph.parser import note_from_text

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _note(path: str, content: str):
    return note_from_text(textwrap.dedent(content), path)


@pytest.fixture()
def state() -> GraphState:
    index = GraphIndex()
    index.rebuild(
        [
            _note("alpha.md", """\
                ---
                title: Alpha
                aliases: [First]
                tags: [python, tutorial]
                ---
                See [[beta]] and [[Gamma]] and [[ghost]].
            """),
            _note("beta.md", """\
                ---
                title: Beta
                tags: [python]
                ---
                Links [[First]] and [[Gamma]].
            """),
            _note("gamma.md", """\
                ---
                title: Gamma
                tags: [data]
                ---
                No links here.
            """),
        ]
    )
    return index.snapshot()


@pytest.fixture()
def db(state: GraphState):
    with GraphDB(state) as graph_db:
        yield graph_db


# ---------------------------------------------------------------------------
# query()
# ---------------------------------------------------------------------------


class TestGraphDBQuery:
    def test_basic_select(self, db: GraphDB):
        df = db.query("SELECT id FROM notes ORDER BY id")
        assert isinstance(df, pl.DataFrame)
        assert df["id"].to_list() == ["alpha", "beta", "gamma"]

    def test_params(self, db: GraphDB):
        df = db.query("SELECT source FROM refs WHERE resolved = ? ORDER BY source", ["gamma"])
        assert df["source"].to_list() == ["alpha", "beta"]

    def test_aliases_column_is_list(self, db: GraphDB):
        df = db.query("SELECT aliases FROM notes WHERE id = 'alpha'")
        assert df["aliases"][0].to_list() == ["First"]

    def test_bad_sql_raises(self, db: GraphDB):
        with pytest.raises(duckdb.Error):
            db.query("SELECT * FROM no_such_table")


# ---------------------------------------------------------------------------
# Pre-built views
# ---------------------------------------------------------------------------


class TestGraphDBViews:
    def test_broken_links(self, db: GraphDB):
        df = db.broken_links()
        assert df.rows() == [("alpha", "Alpha", "ghost", 6)]

    def test_most_linked(self, db: GraphDB):
        df = db.most_linked(limit=2)
        assert df["id"].to_list() == ["gamma", "alpha"]
        assert df["backlinks"].to_list() == [2, 1]

    def test_tag_counts(self, db: GraphDB):
        df = db.tag_counts()
        assert df.rows() == [("python", 2), ("data", 1), ("tutorial", 1)]

    def test_schema_info(self, db: GraphDB):
        names = db.schema_info()["column_name"].to_list()
        assert "raw_target" in names
        assert "resolved" in names


class TestGraphDBRefresh:
    def test_refresh_replaces_tables(self, db: GraphDB):
        db.refresh(GraphState())
        assert db.query("SELECT COUNT(*) AS n FROM notes")["n"][0] == 0
        assert db.broken_links().is_empty()
