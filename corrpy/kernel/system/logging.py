import logging
import os
import sys
from typing import Optional, TextIO

_ROOT_NAME = "corrpy"
_HANDLER_NAME = "corrpy.console"
_configured = False


def _configure_root() -> logging.Logger:
    global _configured
    root = logging.getLogger(_ROOT_NAME)
    if not _configured:
        # Records propagate to the application's handlers; nothing is printed unless it configures some
        root.addHandler(logging.NullHandler())
        root.setLevel(os.getenv("CORRPY_LOG_LEVEL", "INFO").upper())
        _configured = True
    return root


def get_logger(name: str) -> logging.Logger:
    """
    Namespaced logger. Module names outside the package are nested under it.
    """
    _configure_root()
    if name == _ROOT_NAME or name.startswith(_ROOT_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT_NAME}.{name}")


def configure_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> logging.Handler:
    """
    Opt-in console output for hosts without their own logging setup, such
    as C callers of the handle API. Repeated calls reuse one handler.
    """
    root = _configure_root()
    if level is not None:
        root.setLevel(level.upper())
    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return handler
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root.addHandler(handler)
    return handler
