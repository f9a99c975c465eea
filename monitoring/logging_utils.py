import logging
from pathlib import Path
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    level: Union[int, str, None] = logging.INFO,
    log_format: Optional[str] = None,
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint. Safe to call multiple
    times; subsequent calls are ignored if handlers exist.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    fmt = log_format or DEFAULT_FORMAT
    logging.basicConfig(level=resolve_level(level), format=fmt)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path)
        handler.setFormatter(logging.Formatter(fmt))
        root.addHandler(handler)
