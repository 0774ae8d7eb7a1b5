"""loguru sinks for the agent-sessions command.

Library modules only emit through ``loguru.logger``; the CLI decides where
records go.
"""

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = "<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


def setup_logging(
    level: str = "WARNING",
    *,
    log_file: Path | str | None = None,
    file_level: str | None = None,
    rotation: str = "5 MB",
    retention: int = 2,
) -> list[str]:
    """Send records to stderr and, when log_file is set, a rotating file.

    Returns one description per registered sink.
    """
    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)
    sinks = [f"console (stderr, {level})"]

    if log_file is not None:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        sink_level = file_level or level
        logger.add(path, level=sink_level, format=FILE_FORMAT, rotation=rotation, retention=retention)
        sinks.append(f"file ({path}, {sink_level})")

    return sinks
