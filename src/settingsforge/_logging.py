"""Logging setup shared by the compiler library and the CLI."""

from __future__ import annotations

import logging
import os
from pathlib import Path

_ROOT_LOGGER = "settingsforge"
_HANDLER_ATTR = "_settingsforge_handler"
_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"
_VERBOSITY_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)


def _level_from_env() -> int | None:
    raw = os.environ.get("SETTINGSFORGE_LOG_LEVEL", "").strip().upper()
    if not raw:
        return None
    resolved = getattr(logging, raw, None)
    return int(resolved) if isinstance(resolved, int) else None


def _resolve_level(level: int | None, verbosity: int) -> int:
    if level is not None:
        return level
    if verbosity > 0:
        return _VERBOSITY_LEVELS[min(verbosity, len(_VERBOSITY_LEVELS) - 1)]
    env_level = _level_from_env()
    return env_level if env_level is not None else logging.WARNING


def _find_handler(logger: logging.Logger, kind: str) -> logging.Handler | None:
    for handler in logger.handlers:
        if getattr(handler, _HANDLER_ATTR, None) == kind:
            return handler
    return None


def _drop_handler(logger: logging.Logger, handler: logging.Handler | None) -> None:
    if handler is None:
        return
    logger.removeHandler(handler)
    handler.close()


def setup_logging(*, level: int | None = None, verbosity: int = 0) -> None:
    """Attach the settingsforge stream handler, and a file handler when asked.

    Precedence for the stream level is *level*, then *verbosity* (``-v`` is
    INFO, ``-vv`` is DEBUG), then ``SETTINGSFORGE_LOG_LEVEL``, then WARNING.
    ``SETTINGSFORGE_LOG_FILE`` adds a file handler logging at INFO or lower.
    Calling this repeatedly reconfigures the same handlers.
    """
    stream_level = _resolve_level(level, verbosity)
    logger = logging.getLogger(_ROOT_LOGGER)

    stream = _find_handler(logger, "stream")
    if stream is None:
        stream = logging.StreamHandler()
        setattr(stream, _HANDLER_ATTR, "stream")
        logger.addHandler(stream)
    stream.setFormatter(logging.Formatter(_FORMAT))
    stream.setLevel(stream_level)

    effective = stream_level
    existing_file = _find_handler(logger, "file")
    file_raw = os.environ.get("SETTINGSFORGE_LOG_FILE", "").strip()
    if not file_raw:
        _drop_handler(logger, existing_file)
    else:
        target = Path(file_raw).expanduser().resolve()
        target.parent.mkdir(parents=True, exist_ok=True)
        reuse = isinstance(existing_file, logging.FileHandler) and (
            Path(existing_file.baseFilename).resolve() == target
        )
        if reuse:
            file_handler = existing_file
        else:
            _drop_handler(logger, existing_file)
            file_handler = logging.FileHandler(target, encoding="utf-8")
            setattr(file_handler, _HANDLER_ATTR, "file")
            logger.addHandler(file_handler)
        file_level = min(stream_level, logging.INFO)
        file_handler.setFormatter(logging.Formatter(_FORMAT))
        file_handler.setLevel(file_level)
        effective = min(effective, file_level)

    logger.setLevel(effective)
