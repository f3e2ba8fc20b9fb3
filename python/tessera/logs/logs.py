from contextlib import contextmanager

import os
import logging.config
from typing import Protocol

DEFAULT_LOG_FORMAT = os.getenv(
  "TESSERA_LOG_FORMAT", "%(asctime)s %(log_color)s%(levelname)5s%(reset)s %(name)-14s %(message)s"
)
FORMAT = DEFAULT_LOG_FORMAT + (" [%(pathname)s:%(lineno)d]" if os.getenv("TESSERA_LOG_SHOW_SOURCE", False) else "")

# Loggers owned by this package. Each one falls back to the default level
# unless configured explicitly, e.g. TESSERA_LOG_LEVELS="info,health=debug".
PACKAGE_LOGGERS = ["server", "transport", "health", "manager", "session", "context", "tool"]

LOG_LEVELS = {}

LEVELS: dict[str, int] = {
  "critical": logging.CRITICAL,
  "error": logging.ERROR,
  "warning": logging.WARNING,
  "info": logging.INFO,
  "debug": logging.DEBUG,
}


def get_logging_config() -> dict[str, int | bool | dict | str | None]:
  # Disable logging if explicitly set to 0; otherwise, assume it's enabled
  if os.environ.get("TESSERA_LOGGING", "1") == "0":
    return {
      "version": 1,
      "disable_existing_loggers": False,
    }

  global LOG_LEVELS
  if not LOG_LEVELS:
    set_log_levels(os.environ.get("TESSERA_LOG_LEVELS"))
  return create_logging_config(LOG_LEVELS, FORMAT)


def set_log_level(module_name: str, level: str):
  """
  Set the log level for a specific module.
  """
  global LOG_LEVELS
  if not LOG_LEVELS:
    LOG_LEVELS = create_log_levels(None)
  LOG_LEVELS[module_name] = level.upper()


def set_log_levels(log_levels: str | None):
  global LOG_LEVELS
  LOG_LEVELS = create_log_levels(log_levels)


def get_log_levels() -> dict[str, str]:
  return dict(LOG_LEVELS)


def apply_log_levels():
  logging.config.dictConfig(get_logging_config())


def create_logging_config(levels: dict, log_format: str) -> dict[str, int | bool | dict | str | None]:
  loggers = {
    "asyncio": {
      "handlers": ["default"],
      "level": levels.get("asyncio", "WARNING"),
      "propagate": False,
    },
    "httpcore": {
      "handlers": ["default"],
      "level": levels.get("httpcore", "WARNING"),
      "propagate": False,
    },
    "httpx": {
      "handlers": ["default"],
      "level": levels.get("httpx", "WARNING"),
      "propagate": False,
    },
  }

  for name in PACKAGE_LOGGERS:
    loggers[name] = {
      "handlers": ["default"],
      "level": levels.get(name) or levels.get("default"),
      "propagate": False,
    }

  return {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
      "default": {
        "()": "tessera.logs.formatter.Formatter",
        "format": log_format,
        "log_colors": {
          "DEBUG": "blue",
          "INFO": "green",
          "WARNING": "yellow",
          "ERROR": "red",
          "CRITICAL": "bold_red",
        },
      },
    },
    "handlers": {
      "default": {
        "level": levels.get("default"),
        "formatter": "default",
        "class": "logging.StreamHandler",
      },
    },
    "loggers": loggers,
    "root": {"level": levels.get("default"), "handlers": ["default"]},
  }


def create_log_levels(log_levels: str | None) -> dict[str, str]:
  """
  Create log levels for python modules
  """
  result = {"default": "INFO"}
  if log_levels is not None:
    for level in log_levels.split(","):
      if not level.strip():
        continue
      key_value = level.split("=")
      if len(key_value) == 1:
        result["default"] = level.strip().upper()
      else:
        key = key_value[0].strip()
        value = key_value[1].strip()
        result[key] = value.upper()

  return result


def get_logger(logger_name):
  logging.config.dictConfig(get_logging_config())
  return logging.getLogger(logger_name)


def info(msg, *args, **kwargs):
  logger = logging.getLogger("server")
  logger.info(msg, stacklevel=2, *args, **kwargs)


def warning(msg, *args, **kwargs):
  logger = logging.getLogger("server")
  logger.warning(msg, stacklevel=2, *args, **kwargs)


def debug(msg, *args, **kwargs):
  logger = logging.getLogger("server")
  logger.debug(msg, stacklevel=2, *args, **kwargs)


def error(msg, *args, **kwargs):
  logger = logging.getLogger("server")
  logger.error(msg, stacklevel=2, *args, **kwargs)


class LoggerAware(Protocol):
  logger: logging.Logger


class InfoContext(LoggerAware):
  @contextmanager
  def info(self, before_msg, after_msg):
    self.logger.info(before_msg)
    yield
    self.logger.info(after_msg)


class DebugContext(LoggerAware):
  @contextmanager
  def debug(self, before_msg, after_msg):
    self.logger.debug(before_msg)
    yield
    self.logger.debug(after_msg)
