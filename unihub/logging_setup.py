import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.DEBUG


def configure_logging(log_file: str | None = None, level: int | str = logging.DEBUG) -> logging.Logger:
    """Attach a file handler to the `unihub` logger tree.

    Logs go to `unihub/logs/unihub.log` unless `log_file` is given; a relative
    `log_file` is placed in the same directory. Library loggers (sqlalchemy,
    uvicorn) are left alone. Calling it again replaces the previous handler.
    """
    logs_dir = Path(__file__).resolve().parent / "logs"
    path = Path(log_file) if log_file is not None else Path("unihub.log")
    if not path.is_absolute():
        path = logs_dir / path
    path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("unihub")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(handler)
    logger.setLevel(_resolve_level(level))
    return logger
