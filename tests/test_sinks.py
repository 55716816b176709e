# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_certflow

import re
from pathlib import Path

from coreason_certflow.sinks import FileAuditSink, MemoryAuditSink, escape_control_chars
from coreason_certflow.utils.logger import logger

AUDIT_LINE = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] (.*)$")


def test_file_sink_line_format(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "login_audit.log"
    sink = FileAuditSink(path)
    try:
        sink.record("LOGIN: alice@example.com")
        sink.record("LOGOUT initiated by alice@example.com")
    finally:
        sink.close()

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    matches = [AUDIT_LINE.match(line) for line in lines]
    assert all(matches)
    assert [m.group(1) for m in matches if m] == ["LOGIN: alice@example.com", "LOGOUT initiated by alice@example.com"]


def test_file_sink_ignores_ordinary_logs(tmp_path: Path) -> None:
    path = tmp_path / "audit.log"
    sink = FileAuditSink(path)
    try:
        logger.info("ordinary diagnostic line")
        logger.bind(audit_channel="audit:elsewhere").info("other channel")
        sink.record("TOKEN REFRESH: alice")
    finally:
        sink.close()

    content = path.read_text(encoding="utf-8")
    assert "ordinary diagnostic line" not in content
    assert "other channel" not in content
    assert "TOKEN REFRESH: alice" in content


def test_two_file_sinks_stay_separate(tmp_path: Path) -> None:
    first = FileAuditSink(tmp_path / "a.log")
    second = FileAuditSink(tmp_path / "b.log")
    try:
        first.record("entry for a")
        second.record("entry for b")
    finally:
        first.close()
        second.close()
        second.close()

    assert "entry for b" not in (tmp_path / "a.log").read_text(encoding="utf-8")
    assert "entry for a" not in (tmp_path / "b.log").read_text(encoding="utf-8")


def test_memory_sink() -> None:
    sink = MemoryAuditSink()
    sink.record("LOGIN: alice")
    assert sink.entries == ["LOGIN: alice"]


def test_escape_control_chars() -> None:
    assert escape_control_chars("LOGIN: alice@example.com") == "LOGIN: alice@example.com"
    assert escape_control_chars("a\r\nb\tc\x1bd") == "a\\r\\nb\\tc\\x1bd"
    assert escape_control_chars("a\u2028b\x85c") == "a\\u2028b\\x85c"
    assert escape_control_chars("Zoë Ångström") == "Zoë Ångström"


def test_file_sink_one_entry_is_one_line(tmp_path: Path) -> None:
    path = tmp_path / "audit.log"
    sink = FileAuditSink(path)
    try:
        sink.record("LOGIN DENIED: access_denied | x\n[2025-01-01 00:00:00] LOGIN: admin@example.com\r")
    finally:
        sink.close()

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    match = AUDIT_LINE.match(lines[0])
    assert match
    assert match.group(1) == "LOGIN DENIED: access_denied | x\\n[2025-01-01 00:00:00] LOGIN: admin@example.com\\r"


def test_memory_sink_escapes_control_chars() -> None:
    sink = MemoryAuditSink()
    sink.record("LOGIN FAILED: HTTP 400 | bad\nLOGIN: admin")
    assert sink.entries == ["LOGIN FAILED: HTTP 400 | bad\\nLOGIN: admin"]
