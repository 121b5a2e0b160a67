"""GraphConfig: vault-local configuration for the note graph.

Read from an optional ``notegraph.toml`` in the vault root::

    [notegraph]
    include = ["**/*.md"]
    exclude = [".obsidian/**", ".trash/**"]
    encoding = "utf-8"
    workers = 8            # extractor threads for the cold-start load
    reindex = "eager"      # or "lazy": changed notes stay stale until reindexed
    log_level = "INFO"

Environment variables override the file (explicit kwargs override both):
    NOTEGRAPH_WORKERS, NOTEGRAPH_REINDEX, NOTEGRAPH_ENCODING, NOTEGRAPH_LOG_LEVEL
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "notegraph.toml"
_ENV_PREFIX = "NOTEGRAPH_"

_DEFAULT_INCLUDE = ["**/*.md"]
_DEFAULT_EXCLUDE = [".obsidian/**", ".trash/**", "**/.git/**", "**/node_modules/**"]

REINDEX_MODES = ("eager", "lazy")


def _default_workers() -> int:
    return min(8, os.cpu_count() or 1)


@dataclass(frozen=True)
class GraphConfig:
    include: list[str] = field(default_factory=lambda: list(_DEFAULT_INCLUDE))
    exclude: list[str] = field(default_factory=lambda: list(_DEFAULT_EXCLUDE))
    encoding: str = "utf-8"
    workers: int = field(default_factory=_default_workers)
    reindex: str = "eager"
    log_level: str = "WARNING"

    def __post_init__(self) -> None:
        if self.reindex not in REINDEX_MODES:
            raise ValueError(f"reindex must be one of {REINDEX_MODES}, got {self.reindex!r}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraphConfig:
        section = data.get("notegraph", data)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(section) - known)
        if unknown:
            raise ValueError(f"unknown notegraph config keys: {', '.join(unknown)}")
        return cls(**section)

    def with_env(self, environ: dict[str, str] | None = None) -> GraphConfig:
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        if value := env.get(f"{_ENV_PREFIX}WORKERS"):
            overrides["workers"] = int(value)
        if value := env.get(f"{_ENV_PREFIX}REINDEX"):
            overrides["reindex"] = value.lower()
        if value := env.get(f"{_ENV_PREFIX}ENCODING"):
            overrides["encoding"] = value
        if value := env.get(f"{_ENV_PREFIX}LOG_LEVEL"):
            overrides["log_level"] = value.upper()
        return replace(self, **overrides) if overrides else self


def load_config(root: Path | str, *, environ: dict[str, str] | None = None, **overrides: Any) -> GraphConfig:
    """Load ``notegraph.toml`` from *root* (if present), then env, then *overrides*."""
    path = Path(root) / CONFIG_FILENAME
    if path.is_file():
        with open(path, "rb") as fh:
            config = GraphConfig.from_dict(tomllib.load(fh))
    else:
        config = GraphConfig()
    config = config.with_env(environ)
    return replace(config, **overrides) if overrides else config


def configure_logging(level: str | int = "WARNING") -> None:
    """Route notegraph's loggers to stderr at *level*."""
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    logging.getLogger("notegraph").setLevel(level)
