"""Prompt templates kept in ``wykra/prompts/prompts.json``.

Keys are dotted paths into the catalog (``chat.extract_query``). Values are
``string.Template`` strings, or lists of lines joined with newlines.
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any, Iterator

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"


class PromptCatalog:
    """Loads the catalog lazily and reloads it when the file changes."""

    def __init__(self, path: Path):
        self.path = path
        self._entries: dict[str, Any] | None = None
        self._mtime_ns: int | None = None

    def entries(self) -> dict[str, Any]:
        mtime_ns = self.path.stat().st_mtime_ns
        if self._entries is None or self._mtime_ns != mtime_ns:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError(f"Prompt catalog {self.path} must be a JSON object")
            self._entries = payload
            self._mtime_ns = mtime_ns
        return self._entries

    def template(self, key: str) -> Template:
        node: Any = self.entries()
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                raise KeyError(f"Prompt key not found: {key}")
            node = node[part]
        if isinstance(node, list) and all(isinstance(line, str) for line in node):
            return Template("\n".join(node))
        if not isinstance(node, str):
            raise TypeError(f"Prompt key must map to a string: {key}")
        return Template(node)

    def keys(self) -> Iterator[str]:
        """Every renderable key, depth first."""

        def walk(node: dict[str, Any], prefix: str) -> Iterator[str]:
            for name, value in node.items():
                if isinstance(value, dict):
                    yield from walk(value, f"{prefix}{name}.")
                else:
                    yield f"{prefix}{name}"

        return walk(self.entries(), "")

    def invalidate(self) -> None:
        self._entries = None
        self._mtime_ns = None


_catalog: PromptCatalog | None = None


def get_catalog() -> PromptCatalog:
    global _catalog
    if _catalog is None or _catalog.path != PROMPTS_PATH:
        _catalog = PromptCatalog(PROMPTS_PATH)
    return _catalog


def render_prompt(key: str, **values: Any) -> str:
    """Render ``key`` with ``values``. Every placeholder must be supplied."""
    try:
        return get_catalog().template(key).substitute(**values)
    except KeyError as exc:
        if str(exc.args[0]).startswith("Prompt key not found"):
            raise
        raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc


def prompt_keys() -> list[str]:
    return list(get_catalog().keys())


def clear_prompt_cache() -> None:
    get_catalog().invalidate()
