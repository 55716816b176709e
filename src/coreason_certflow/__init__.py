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
Certificate-authenticated OAuth 2.0 / OpenID Connect relying party: client assertions
signed with a private key instead of a client secret.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import CertflowConfig
from .credentials import CredentialBundle, load_credentials
from .exceptions import (
    CoreasonCertflowError,
    ExchangeError,
    InvalidStateError,
    ProtocolError,
    ProviderError,
    SigningError,
    TransportError,
)
from .models import FlowResult, FlowState, Session
from .orchestrator import FlowOrchestrator, FlowOrchestratorAsync
from .session import MemorySessionStore
from .signer import AssertionSigner
from .sinks import FileAuditSink, MemoryAuditSink

__all__ = [
    "AssertionSigner",
    "CertflowConfig",
    "CoreasonCertflowError",
    "CredentialBundle",
    "ExchangeError",
    "FileAuditSink",
    "FlowOrchestrator",
    "FlowOrchestratorAsync",
    "FlowResult",
    "FlowState",
    "InvalidStateError",
    "MemoryAuditSink",
    "MemorySessionStore",
    "ProtocolError",
    "ProviderError",
    "Session",
    "SigningError",
    "TransportError",
    "load_credentials",
]
