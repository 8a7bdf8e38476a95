"""Loguru sinks built from the ``LogConsumers`` list in config.json.

Each entry names a sink ``type`` (``console``, ``file`` or ``json``), may
override ``LogLevel`` with its own ``level``, and passes any remaining keys
to the sink as options, for example::

    {"type": "json", "path": "logs/turns.jsonl", "rotation": "50 MB"}
"""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from loguru import logger

CONSOLE_FORMAT = "<green>{time:HH:mm:ss}</green> <level>{level:<8}</level> <cyan>{name}</cyan> - <level>{message}</level>"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"

DEFAULT_CONSUMERS: list[dict[str, Any]] = [
    {"type": "console"},
    {"type": "file", "path": "thread_runtime.log"},
]

_STREAMS = ("stderr", "stdout")


def _add_console(level: str, stream: str = "stderr") -> str:
    if stream not in _STREAMS:
        raise ValueError(f"stream must be one of {', '.join(_STREAMS)}")
    logger.add(getattr(sys, stream), level=level, format=CONSOLE_FORMAT)
    return f"console ({stream}, {level})"


def _add_file(
    level: str,
    path: str = "thread_runtime.log",
    rotation: str = "10 MB",
    retention: int = 3,
    serialize: bool = False,
) -> str:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        path,
        level=level,
        format=FILE_FORMAT,
        rotation=rotation,
        retention=retention,
        serialize=serialize,
        encoding="utf-8",
    )
    return f"{'json' if serialize else 'file'} ({path}, {level})"


def _add_json(level: str, path: str = "thread_runtime.jsonl", **options: Any) -> str:
    # One serialized record per line.
    return _add_file(level, path, serialize=True, **options)


_SINKS: dict[str, Callable[..., str]] = {
    "console": _add_console,
    "file": _add_file,
    "json": _add_json,
}


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace every loguru sink with the configured consumers.

    Entries with an unknown type or unusable options are skipped with a
    warning. Returns one description per sink that was added.
    """
    logger.remove()
    level = level.upper()

    descriptions: list[str] = []
    for entry in DEFAULT_CONSUMERS if consumers is None else consumers:
        options = dict(entry)
        kind = options.pop("type", "")
        sink_level = str(options.pop("level", level)).upper()

        add_sink = _SINKS.get(kind)
        if add_sink is None:
            logger.warning(f"Skipping log consumer with unknown type {kind!r}")
            continue
        try:
            descriptions.append(add_sink(sink_level, **options))
        except (TypeError, ValueError) as exc:
            logger.warning(f"Skipping {kind} log consumer: {exc}")

    return descriptions
