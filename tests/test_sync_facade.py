# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_certflow

from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from conftest import FakeClock, token_response

from coreason_certflow.config import CertflowConfig
from coreason_certflow.credentials import CredentialBundle
from coreason_certflow.exceptions import CoreasonCertflowError
from coreason_certflow.models import FlowState, Session
from coreason_certflow.orchestrator import FlowOrchestrator
from coreason_certflow.sinks import MemoryAuditSink


def test_sync_facade_context_manager(config: CertflowConfig, credentials: CredentialBundle) -> None:
    with patch("coreason_certflow.orchestrator.FlowOrchestratorAsync") as MockAsync:
        mock_instance = MockAsync.return_value
        mock_instance.__aexit__ = AsyncMock()

        with FlowOrchestrator(config, credentials) as flow:
            assert flow._async == mock_instance

        mock_instance.__aexit__.assert_awaited_once()


def test_sync_facade_full_flow(
    config: CertflowConfig,
    credentials: CredentialBundle,
    mock_client: AsyncMock,
    audit: MemoryAuditSink,
    clock: FakeClock,
    login_tokens: dict[str, Any],
) -> None:
    mock_client.post.return_value = token_response(200, login_tokens)
    session = Session(session_id="session-1")

    with FlowOrchestrator(config, credentials, client=mock_client, audit=audit, clock=clock) as flow:
        assert flow.begin_request(session) is False
        login = flow.login(session)
        assert login.is_redirect

        result = flow.callback(session, "code-1", session.oauth_state)
        assert result.location == "/home"
        assert flow.state_of(session) == FlowState.AUTHENTICATED

        refresh = flow.refresh(session)
        assert refresh.body == {"status": "ok", "message": "Still valid", "expires_in": 3600}

        logout = flow.logout(session)
        assert logout.state == FlowState.ANONYMOUS

    assert mock_client.post.await_count == 1
    assert audit.entries == ["LOGIN: alice@example.com", "LOGOUT initiated by alice@example.com"]
    mock_client.aclose.assert_not_awaited()


def test_sync_facade_closed(
    config: CertflowConfig, credentials: CredentialBundle, mock_client: AsyncMock, audit: MemoryAuditSink
) -> None:
    flow = FlowOrchestrator(config, credentials, client=mock_client, audit=audit)
    flow.close()
    flow.close()

    with pytest.raises(CoreasonCertflowError, match="closed"):
        flow.refresh(Session(session_id="session-1", refresh_token="refresh-1"))
