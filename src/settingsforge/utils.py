from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterable

import yaml

_log = logging.getLogger("settingsforge.utils")

# Zero-width characters plus C0/C1 control characters.
_UNSAFE_CHARS_RE = re.compile("[\u200b-\u200d\ufeff\u0000-\u001f\u007f-\u009f]")
# Same set, keeping tab, newline and carriage return for multi-line bodies.
_UNSAFE_TEXT_RE = re.compile(
    "[\u200b-\u200d\ufeff\u0000-\u0008\u000b\u000c\u000e-\u001f\u007f-\u009f]"
)


def dump_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False) + "\n"


def dump_yaml(value: Any) -> str:
    return yaml.safe_dump(value, sort_keys=False, allow_unicode=True)


def strip_unsafe(text: str, *, multiline: bool = False) -> str:
    pattern = _UNSAFE_TEXT_RE if multiline else _UNSAFE_CHARS_RE
    return pattern.sub("", text)


def has_unsafe_chars(text: str) -> bool:
    return bool(_UNSAFE_CHARS_RE.search(text)) or not text.isascii()


def dedupe_preserve(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        tmp.replace(path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
    _log.debug("file_written path=%s bytes=%d", path, len(content))
