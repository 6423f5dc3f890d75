import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_LOGGERS = {}
_LEVEL = logging.DEBUG
_FILE_HANDLERS = {}
_LOG_DIR: Optional[Path] = None

_FORMATTER = logging.Formatter(
    "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
)


def _file_handler(runtime: str) -> Optional[logging.Handler]:
    if _LOG_DIR is None:
        return None

    handler = _FILE_HANDLERS.get(runtime)
    if handler is None:
        _LOG_DIR.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        logfile = _LOG_DIR / f"{runtime}-{timestamp}.log"
        handler = logging.FileHandler(logfile, encoding="utf-8")
        handler.setFormatter(_FORMATTER)
        _FILE_HANDLERS[runtime] = handler
    return handler


def get_logger(
    name: str,
    *,
    runtime: str = "relay",
) -> logging.Logger:
    """
    Create or retrieve a named logger.

    Parameters:
    - name: logger namespace (e.g. core.gateway, twitch.chat)
    - runtime: log file prefix (relay | discord)

    Loggers created before configure_logging() pick up the configured
    level and file handler when it runs.
    """
    cache_key = f"{runtime}:{name}"
    if cache_key in _LOGGERS:
        return _LOGGERS[cache_key]

    logger = logging.getLogger(cache_key)
    logger.setLevel(_LEVEL)

    # ------------------------------
    # Console handler
    # ------------------------------
    console = logging.StreamHandler()
    console.setFormatter(_FORMATTER)
    logger.addHandler(console)

    # ------------------------------
    # File handler (one per run)
    # ------------------------------
    file_handler = _file_handler(runtime)
    if file_handler is not None:
        logger.addHandler(file_handler)

    logger.propagate = False
    _LOGGERS[cache_key] = logger

    return logger


def configure_logging(level: str = "info", log_dir: Optional[str] = None) -> int:
    """
    Apply the configured level (trace | debug | info | warn | error) to
    every logger, and optionally start writing per-run log files.

    Returns the numeric level.
    """
    global _LEVEL, _LOG_DIR

    key = (level or "info").lower()
    if key not in LEVELS:
        raise ValueError(f"Unknown log level: {level}")
    _LEVEL = LEVELS[key]

    if log_dir:
        _LOG_DIR = Path(log_dir)

    for cache_key, logger in _LOGGERS.items():
        logger.setLevel(_LEVEL)
        runtime = cache_key.split(":", 1)[0]
        handler = _file_handler(runtime)
        if handler is not None and handler not in logger.handlers:
            logger.addHandler(handler)

    return _LEVEL
