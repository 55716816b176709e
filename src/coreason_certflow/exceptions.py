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
Custom exceptions for the coreason-certflow package.
"""

from typing import Any


class CoreasonCertflowError(Exception):
    """Base exception for all coreason-certflow errors."""


class SigningError(CoreasonCertflowError):
    """
    Raised when the client assertion cannot be built.
    Covers unreadable or malformed certificates and unusable private keys.
    Fatal for the current request, never retried.
    """


class ExchangeError(CoreasonCertflowError):
    """Base class for token endpoint failures."""


class TransportError(ExchangeError):
    """Raised when no HTTP response was received from the token endpoint."""

    def __init__(self, message: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class ProviderError(ExchangeError):
    """Raised when the token endpoint answers with a non-2xx status."""

    def __init__(self, message: str, status_code: int, body: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body or {}


class ProtocolError(CoreasonCertflowError):
    """Raised when a well-formed response lacks required fields (e.g. no id_token)."""


class InvalidStateError(ProtocolError):
    """Raised when the callback `state` does not match the one bound to the session."""
