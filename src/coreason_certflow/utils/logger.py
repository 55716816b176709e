# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_certflow

import logging
import os
import re
import sys
from collections.abc import Mapping
from typing import Any

from loguru import logger
from opentelemetry import trace

__all__ = ["logger", "configure_logging", "filter_sensitive", "log_diagnostic"]

SENSITIVE_KEY_PATTERN = re.compile(r"(secret|key|cert|token|password)", re.IGNORECASE)


class InterceptHandler(logging.Handler):
    """
    Redirects standard logging messages to Loguru.
    Ensures libraries using standard logging (httpx, uvicorn) are captured uniformly.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno  # type: ignore[assignment]

        # Find caller from where originated the logged message
        frame = logging.currentframe()
        depth = 2
        while frame and (frame.f_code.co_filename == logging.__file__ or frame.f_code.co_filename == __file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def trace_id_injector(record: dict[str, Any]) -> None:
    """
    Injects OpenTelemetry trace_id and span_id into the log record.
    Used as a patcher for Loguru.
    """
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx.is_valid:
        record["extra"]["trace_id"] = format(ctx.trace_id, "032x")
        record["extra"]["span_id"] = format(ctx.span_id, "016x")


def configure_logging() -> None:
    """
    Configures the logger based on environment variables.
    Call this to reload configuration if env vars change.

    Logs never go to a file: tokens and claims pass through this process and
    the audit trail has its own sink (see `coreason_certflow.sinks`).
    """
    log_level = os.getenv("COREASON_LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("COREASON_LOG_JSON", "false").lower() == "true"

    try:
        logger.level(log_level)
    except ValueError:
        log_level = "INFO"

    logger.configure(handlers=[], patcher=trace_id_injector)  # type: ignore[arg-type]

    if log_json:
        logger.add(sys.stdout, level=log_level, serialize=True)
    else:
        format_str = (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        )
        logger.add(sys.stderr, level=log_level, format=format_str)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    numeric_level = logging.getLevelName(log_level)
    if isinstance(numeric_level, int):
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.getLogger().setLevel(logging.INFO)


def filter_sensitive(context: Mapping[str, Any]) -> dict[str, Any]:
    """
    Drops every entry whose key looks secret-bearing (secret, key, cert, token, password).

    Args:
        context: Structured context for a diagnostic message.

    Returns:
        A new dict without the sensitive keys.
    """
    return {k: v for k, v in context.items() if not SENSITIVE_KEY_PATTERN.search(str(k))}


def log_diagnostic(message: str, context: Mapping[str, Any] | None = None, level: str = "INFO") -> None:
    """
    Diagnostics sink: emits an operational log line with filtered structured context.

    Args:
        message: Human readable message. Must not contain secrets.
        context: Optional structured context. Secret-bearing keys are removed.
        level: Loguru level name.
    """
    filtered = filter_sensitive(context or {})
    logger.bind(**filtered).log(level, message if not filtered else f"{message} | {filtered}")


# Initialize on import
configure_logging()
