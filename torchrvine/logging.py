"""Structured logging for torchrvine using structlog.

The library never configures logging globally; callers that want JSON or
console rendering configure structlog themselves.
"""

from __future__ import annotations

import structlog


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, optionally bound to a name."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
