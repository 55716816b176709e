# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_certflow

"""
Audit sinks for security events (login, logout, refresh, failures).
"""

import re
from pathlib import Path
from typing import Any, Protocol

from coreason_certflow.utils.logger import logger

AUDIT_FORMAT = "[{time:YYYY-MM-DD HH:mm:ss}] {message}"

# C0, DEL, C1 and the Unicode line separators; any of them would split or forge an entry
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f\u2028\u2029]")


def escape_control_chars(message: str) -> str:
    """Renders control characters as backslash escapes so one entry is exactly one line."""
    return _CONTROL_CHARS.sub(lambda m: m.group().encode("unicode_escape").decode("ascii"), message)


class AuditSink(Protocol):
    """Protocol for an append-only audit trail."""

    def record(self, message: str) -> None:
        """Appends one timestamped entry."""
        ...


class FileAuditSink:
    """
    Appends audit entries to a file through a dedicated Loguru sink.

    Entries are routed by a bound `audit_channel` so the file never receives
    ordinary diagnostics. Calling `configure_logging()` afterwards removes the
    sink; create the FileAuditSink after logging is configured.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._channel = f"audit:{self.path.resolve()}"
        self._handler_id: int | None = logger.add(
            str(self.path),
            format=AUDIT_FORMAT,
            filter=self._accepts,
            level="INFO",
            catch=False,
        )

    def _accepts(self, record: Any) -> bool:
        return bool(record["extra"].get("audit_channel") == self._channel)

    def record(self, message: str) -> None:
        logger.bind(audit_channel=self._channel).info(escape_control_chars(message))

    def close(self) -> None:
        if self._handler_id is not None:
            logger.remove(self._handler_id)
            self._handler_id = None


class MemoryAuditSink:
    """Keeps audit entries in a list. Intended for tests and embedding."""

    def __init__(self) -> None:
        self.entries: list[str] = []

    def record(self, message: str) -> None:
        self.entries.append(escape_control_chars(message))
