import logging
from typing import Optional, Union


def setup_logging(level: Union[int, str, None] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or the API server.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    When ``level`` is omitted the ``monitoring.log_level`` setting is used.
    """
    if logging.getLogger().handlers:
        return

    if level is None:
        from config import config

        level = config.get('monitoring', {}).get('log_level', 'INFO')
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    # Per-frame websockets debug output drowns the stream logs
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))
