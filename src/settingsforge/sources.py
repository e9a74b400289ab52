"""Markdown command and agent sources with optional YAML frontmatter."""

from __future__ import annotations

import glob
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol

import yaml

_log = logging.getLogger("settingsforge.sources")

MARKDOWN_SUFFIXES = (".md", ".markdown")
_FENCE = "---"


@dataclass(frozen=True)
class MarkdownSource:
    name: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    path: Path | None = None


class MarkdownReader(Protocol):
    def __call__(
        self, patterns: Iterable[str], *, root: Path
    ) -> list[MarkdownSource]: ...


def split_frontmatter(text: str, *, source: str = "<text>") -> tuple[dict[str, Any], str]:
    """Split a leading ``---`` YAML block from the markdown body.

    A block that fails to parse, or is not a mapping, is left in the body.
    """
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != _FENCE:
        return {}, text
    for index in range(1, len(lines)):
        if lines[index].strip() != _FENCE:
            continue
        header = "".join(lines[1:index])
        body = "".join(lines[index + 1 :]).lstrip("\r\n")
        try:
            metadata = yaml.safe_load(header) if header.strip() else {}
        except yaml.YAMLError as exc:
            _log.warning("frontmatter_invalid source=%s error=%s", source, exc)
            return {}, text
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, dict):
            _log.warning(
                "frontmatter_not_mapping source=%s type=%s",
                source,
                type(metadata).__name__,
            )
            return {}, text
        return metadata, body
    return {}, text


def _expand(pattern: str, root: Path) -> list[Path]:
    candidate = Path(pattern).expanduser()
    full = candidate if candidate.is_absolute() else root / candidate
    return [Path(item) for item in sorted(glob.glob(str(full), recursive=True))]


def read_markdown_sources(
    patterns: Iterable[str], *, root: Path
) -> list[MarkdownSource]:
    out: list[MarkdownSource] = []
    for pattern in patterns:
        matches = [
            path
            for path in _expand(pattern, root)
            if path.is_file() and path.suffix.lower() in MARKDOWN_SUFFIXES
        ]
        if not matches:
            _log.warning("markdown_glob_empty pattern=%s root=%s", pattern, root)
        for path in matches:
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                _log.warning("markdown_unreadable source=%s error=%s", path, exc)
                continue
            metadata, body = split_frontmatter(text, source=str(path))
            out.append(
                MarkdownSource(
                    name=path.stem, content=body, metadata=metadata, path=path
                )
            )
    _log.debug("markdown_sources_read count=%d", len(out))
    return out
