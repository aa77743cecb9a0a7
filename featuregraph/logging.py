import inspect
import logging
import os
from pprint import pformat
from typing import Any

from pydantic import BaseModel

LOG_LEVEL_ENV = "FEATUREGRAPH_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s - %(name)s:%(lineno)d - %(levelname)s - %(message)s"


class PprintLogger:
    """A logger wrapper that pretty-prints structured messages.

    Dicts, lists and Pydantic models passed as the message are rendered with
    pformat / model_dump_json so batch services can log whole records.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _format_message(self, msg: Any, pprint: bool = True) -> str:
        if not pprint or isinstance(msg, str):
            return str(msg)
        if isinstance(msg, BaseModel):
            return msg.model_dump_json(indent=2)
        if isinstance(msg, dict):
            rendered = {k: (v.model_dump(mode="json") if isinstance(v, BaseModel) else v) for k, v in msg.items()}
            return pformat(rendered, width=120, depth=None)
        return pformat(msg, width=120, depth=None)

    def debug(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def info(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.info(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def warning(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.warning(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def error(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.error(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def critical(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.critical(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def exception(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.exception(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._logger, name)


def _level_from_env(default: int) -> int:
    value = os.environ.get(LOG_LEVEL_ENV)
    if not value:
        return default
    if value.isdigit():
        return int(value)
    resolved = logging.getLevelName(value.upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(name: str | None = None, level: int | None = None) -> PprintLogger:
    """Return a PprintLogger for `name` (defaults to the caller's module).

    The level comes from `level`, then FEATUREGRAPH_LOG_LEVEL, then INFO.
    A stream handler is attached only once per logger.
    """
    if name is None:
        frame = inspect.currentframe().f_back  # type: ignore[union-attr]
        name = frame.f_globals.get("__name__", "featuregraph")  # type: ignore[union-attr]
    effective = level if level is not None else _level_from_env(logging.INFO)
    logger = logging.getLogger(name)
    logger.setLevel(effective)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(effective)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return PprintLogger(logger)
