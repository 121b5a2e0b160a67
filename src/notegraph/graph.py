"""Graph analysis over an index snapshot.

Uses :mod:`networkx` for the link graph and layout and :mod:`polars` for the
node/edge tables an external graph view can plot directly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import networkx as nx
import polars as pl

if TYPE_CHECKING:
    from notegraph.index import GraphState

_BROKEN_PREFIX = "broken:"


def to_networkx(state: "GraphState", *, include_broken: bool = False) -> nx.DiGraph:
    """Return the note link graph as a :class:`networkx.DiGraph`.

    Nodes carry ``title``, ``path`` and ``tags``; an edge's ``weight`` is the
    number of references from its source to its target.  With
    *include_broken*, unresolved targets become ``broken:<target>`` nodes.
    """
    G: nx.DiGraph = nx.DiGraph()
    for note_id, entry in sorted(state.entries.items()):
        G.add_node(note_id, title=entry.title, path=entry.sort_path, tags=list(entry.tags), broken=False)
    for note_id, entry in sorted(state.entries.items()):
        for ref in entry.refs:
            if ref.resolved is not None:
                target = ref.resolved
            elif include_broken:
                target = f"{_BROKEN_PREFIX}{ref.raw_target.casefold()}"
                if target not in G:
                    G.add_node(target, title=ref.raw_target, path="", tags=[], broken=True)
            else:
                continue
            if G.has_edge(note_id, target):
                G[note_id][target]["weight"] += 1
            else:
                G.add_edge(note_id, target, weight=1)
    return G


def orphans(state: "GraphState") -> list[str]:
    """Notes with no resolved links in either direction."""
    G = to_networkx(state)
    return sorted(n for n in G.nodes if G.degree(n) == 0 or (G.degree(n) == 2 and G.has_edge(n, n)))


def broken_link_report(state: "GraphState") -> dict[str, list[str]]:
    """Unresolved target text -> sorted ids of the notes linking to it."""
    report: dict[str, set[str]] = {}
    for ref in state.broken_links():
        report.setdefault(ref.raw_target, set()).add(ref.source)
    return {target: sorted(sources) for target, sources in sorted(report.items())}


def layout_frames(
    state: "GraphState",
    *,
    highlight: str | None = None,
    seed: int = 42,
) -> tuple[pl.DataFrame, pl.DataFrame]:
    """Spring-layout node and edge tables for a graph view.

    Parameters
    ----------
    state:
        An index snapshot.
    highlight:
        Id of the currently-selected note; its row gets ``highlighted=True``.
    seed:
        Random seed passed to ``networkx.spring_layout`` for reproducible
        positioning.
    """
    G = to_networkx(state)
    pos: dict[str, Any] = nx.spring_layout(G, seed=seed, k=2.0) if len(G) else {}

    nodes_df = pl.DataFrame(
        [
            {
                "id": n,
                "title": G.nodes[n]["title"],
                "x": float(pos[n][0]),
                "y": float(pos[n][1]),
                "degree": int(G.degree(n)),
                "highlighted": n == highlight,
            }
            for n in G.nodes()
        ],
        schema={
            "id": pl.Utf8,
            "title": pl.Utf8,
            "x": pl.Float64,
            "y": pl.Float64,
            "degree": pl.Int64,
            "highlighted": pl.Boolean,
        },
    )
    edges_df = pl.DataFrame(
        [
            {
                "source": src,
                "target": tgt,
                "weight": int(data["weight"]),
                "x": float(pos[src][0]),
                "y": float(pos[src][1]),
                "x2": float(pos[tgt][0]),
                "y2": float(pos[tgt][1]),
            }
            for src, tgt, data in G.edges(data=True)
        ],
        schema={
            "source": pl.Utf8,
            "target": pl.Utf8,
            "weight": pl.Int64,
            "x": pl.Float64,
            "y": pl.Float64,
            "x2": pl.Float64,
            "y2": pl.Float64,
        },
    )
    return nodes_df, edges_df
