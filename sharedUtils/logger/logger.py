# logger/logger.py
import logging
import os
import threading
import tomllib
from pathlib import Path

CONFIG_PATH = Path(__file__).resolve().parents[1] / "config" / "config.toml"
DEFAULT_LOG_FILE = Path("logs/telemetry.log")
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LEVEL_ENV_VAR = "TELEMETRY_LOG_LEVEL"

# Cached config and locks
_config_lock = threading.Lock()
_cached_config = None

_logger_lock = threading.Lock()
_configured_names = set()


def _defaults():
    return {
        "level": "INFO",
        "file": DEFAULT_LOG_FILE,
        "format": DEFAULT_FORMAT,
        "console_export": True,
    }


def load_logging_config():
    global _cached_config

    if _cached_config is None:
        with _config_lock:
            if _cached_config is None:
                config_path = Path(os.environ.get("TELEMETRY_CONFIG", CONFIG_PATH))
                cfg = _defaults()
                try:
                    with open(config_path, "rb") as f:
                        log_cfg = tomllib.load(f).get("logging", {})
                except (OSError, tomllib.TOMLDecodeError):
                    # The logger has to work before the config is valid
                    log_cfg = {}

                cfg["level"] = log_cfg.get("level", cfg["level"]).upper()
                cfg["file"] = Path(log_cfg["file"]) if log_cfg.get("file") else cfg["file"]
                cfg["format"] = log_cfg.get("format", cfg["format"])
                cfg["console_export"] = bool(log_cfg.get("console_export", True))

                if os.environ.get(LEVEL_ENV_VAR):
                    cfg["level"] = os.environ[LEVEL_ENV_VAR].upper()

                _cached_config = cfg

    return _cached_config


def _attach_handlers(logger: logging.Logger, cfg) -> None:
    logger.setLevel(getattr(logging, cfg["level"], logging.INFO))

    formatter = logging.Formatter(cfg["format"])

    if cfg["console_export"]:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    cfg["file"].parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(cfg["file"])
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    cfg = load_logging_config()
    logger = logging.getLogger(name)

    with _logger_lock:
        if not logger.handlers:
            _attach_handlers(logger, cfg)
            _configured_names.add(name)

    return logger


def reload_logging_config() -> None:
    """Re-read [logging] and rebuild the handlers of every logger handed out so far."""
    global _cached_config

    with _config_lock:
        _cached_config = None
    cfg = load_logging_config()

    with _logger_lock:
        for name in _configured_names:
            logger = logging.getLogger(name)
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()
            _attach_handlers(logger, cfg)
