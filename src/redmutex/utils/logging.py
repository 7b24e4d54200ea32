"""Logger factory shared by the mutex runtime components."""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from rich.logging import RichHandler


_ROOT = "redmutex"


def _default_level() -> int:
    raw = os.getenv("REDMUTEX_LOG_LEVEL", "WARNING").strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.WARNING


def get_logger(name: str, level: Optional[int] = None, *, rich: bool = True) -> logging.Logger:
    """Return a child of the ``redmutex`` logger, configuring the root once."""
    root = logging.getLogger(_ROOT)
    if not root.handlers:
        root.setLevel(level if level is not None else _default_level())
        if rich:
            handler: logging.Handler = RichHandler(
                markup=False,
                rich_tracebacks=True,
                tracebacks_show_locals=False,
                show_time=True,
                show_path=False,
            )
            handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        else:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s %(name)s %(levelname)s: %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
        root.addHandler(handler)
        root.propagate = False
    elif level is not None:
        root.setLevel(level)

    if name == _ROOT or name.startswith(_ROOT + "."):
        return logging.getLogger(name)
    return root.getChild(name)
