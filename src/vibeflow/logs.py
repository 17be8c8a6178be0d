from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s %(message)s"
SCOPED_LOGGER_ROOT = "vibeflow.scope"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the command line entry point."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )


def scope_log_path(log_dir: Path, scope: str) -> Path:
    return log_dir / f"{scope}.log"


def scoped_logger(scope: str, log_dir: Path) -> logging.Logger:
    """Return a logger that mirrors records for one task or phase into its own log file.

    Records still propagate to the root handlers, so console output is unchanged.
    Calling this repeatedly for the same scope and directory reuses the same file handler.
    """

    logger = logging.getLogger(f"{SCOPED_LOGGER_ROOT}.{scope}")
    logger.setLevel(logging.DEBUG)
    target = scope_log_path(log_dir, scope).resolve()
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == target:
            return logger

    target.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(target, encoding="utf-8")
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    logger.addHandler(handler)
    return logger


def close_scoped_loggers() -> None:
    manager = logging.Logger.manager
    for name, logger in list(manager.loggerDict.items()):
        if not name.startswith(SCOPED_LOGGER_ROOT) or not isinstance(logger, logging.Logger):
            continue
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()


def append_log(path: Path, message: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(message.rstrip("\n") + "\n")


def tail_lines(path: Path, count: int) -> list[str]:
    if not path.exists():
        return []
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    return lines[-count:]
