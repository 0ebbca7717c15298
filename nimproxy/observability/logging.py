"""Structured logging bridge."""

from __future__ import annotations

from nimproxy.util.logger import logger


def format_event(event: str, **fields: object) -> str:
    parts = [f"event={event}"]
    parts.extend(f"{key}={value}" for key, value in fields.items())
    return " ".join(parts)


def log_event(event: str, **fields: object) -> None:
    logger.info("%s", format_event(event, **fields))
