import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional


LOGGER_NAME = "banksyscope"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s (%(processName)s) - %(message)s"


def _level(level: str) -> int:
    lvl = logging.getLevelName(str(level).upper())
    return lvl if isinstance(lvl, int) else logging.INFO


def setup_logger(out_dir: str, level: str = "INFO", io_cfg: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """Send the package logger to `<log_name>.log` and `<log_name>.error.log` in `out_dir`.

    Handlers from an earlier call are closed first, so each run logs only into
    its own output directory. `io_cfg` supplies `log_name` and `log_max_mb`.
    """
    io_cfg = io_cfg or {}
    name = str(io_cfg.get("log_name") or LOGGER_NAME)
    max_bytes = int(float(io_cfg.get("log_max_mb", 5)) * 1024 * 1024)
    lvl = _level(level)

    close_logger()
    os.makedirs(out_dir, exist_ok=True)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(lvl)
    fmt = logging.Formatter(_FORMAT)

    log_path = os.path.join(out_dir, f"{name}.log")
    err_path = os.path.join(out_dir, f"{name}.error.log")
    handlers = [
        (RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=3, encoding="utf-8"), lvl),
        (RotatingFileHandler(err_path, maxBytes=max(1, max_bytes // 2), backupCount=2, encoding="utf-8"), logging.ERROR),
        (logging.StreamHandler(), max(lvl, logging.WARNING)),
    ]
    for h, h_lvl in handlers:
        h.setFormatter(fmt)
        h.setLevel(h_lvl)
        logger.addHandler(h)

    # rich owns the terminal during a run; the console handler only reports problems
    logger.propagate = False
    logger.info("Logging to %s (errors also in %s)", log_path, err_path)
    return logger


def close_logger() -> None:
    """Detach and close every handler installed by `setup_logger`."""
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.propagate = True
