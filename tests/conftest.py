# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_certflow

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from coreason_certflow.config import CertflowConfig
from coreason_certflow.credentials import CredentialBundle, load_credentials
from coreason_certflow.orchestrator import FlowOrchestratorAsync
from coreason_certflow.sinks import MemoryAuditSink
from coreason_certflow.utils.encoding import b64url_encode

TOKEN_ENDPOINT = "https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token"
START_TIME = 1_700_000_000


class FakeClock:
    """Settable replacement for time.time."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def certificate(rsa_key: rsa.RSAPrivateKey) -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "certflow-test")])
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(rsa_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(rsa_key, hashes.SHA256())
    )


@pytest.fixture
def key_pem(rsa_key: rsa.RSAPrivateKey) -> bytes:
    return rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture
def key_files(tmp_path: Path, key_pem: bytes, certificate: x509.Certificate) -> tuple[Path, Path]:
    key_path = tmp_path / "private.key"
    cert_path = tmp_path / "public.crt"
    key_path.write_bytes(key_pem)
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    return key_path, cert_path


@pytest.fixture
def config_factory(tmp_path: Path, key_files: tuple[Path, Path]) -> Callable[..., CertflowConfig]:
    def _make(**overrides: Any) -> CertflowConfig:
        values: dict[str, Any] = {
            "tenant_id": "tenant-1",
            "client_id": "client-1",
            "redirect_uri": "https://app.example.com/auth/callback",
            "private_key_path": key_files[0],
            "public_cert_path": key_files[1],
            "post_logout_redirect_uri": "https://app.example.com/",
            "audit_log_path": tmp_path / "logs" / "audit.log",
            "retry_backoff": 0.0,
        }
        values.update(overrides)
        return CertflowConfig(**values)

    return _make


@pytest.fixture
def config(config_factory: Callable[..., CertflowConfig]) -> CertflowConfig:
    return config_factory()


@pytest.fixture
def credentials(config: CertflowConfig) -> CredentialBundle:
    return load_credentials(config)


@pytest.fixture
def audit() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_client() -> AsyncMock:
    return AsyncMock(spec=httpx.AsyncClient)


@pytest.fixture
def orchestrator(
    config: CertflowConfig,
    credentials: CredentialBundle,
    mock_client: AsyncMock,
    audit: MemoryAuditSink,
    clock: FakeClock,
) -> FlowOrchestratorAsync:
    return FlowOrchestratorAsync(config, credentials, client=mock_client, audit=audit, clock=clock)


def make_id_token(claims: dict[str, Any]) -> str:
    """Unsigned compact JWT; only the payload segment is ever read."""
    header = b64url_encode(json.dumps({"alg": "RS256", "typ": "JWT"}).encode())
    payload = b64url_encode(json.dumps(claims).encode())
    return f"{header}.{payload}.c2lnbmF0dXJl"


def token_response(status_code: int = 200, json_data: Any = None, content: bytes | None = None) -> httpx.Response:
    request = httpx.Request("POST", TOKEN_ENDPOINT)
    if content is not None:
        return httpx.Response(status_code, content=content, request=request)
    return httpx.Response(status_code, json=json_data, request=request)


@pytest.fixture
def id_token() -> str:
    return make_id_token({"preferred_username": "alice@example.com", "name": "Alice", "oid": "user-1"})


@pytest.fixture
def login_tokens(id_token: str) -> dict[str, Any]:
    return {
        "token_type": "Bearer",
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "id_token": id_token,
        "expires_in": 3600,
    }
