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
Process-wide credential bundle, loaded once at startup.
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, SecretBytes

from coreason_certflow.config import CertflowConfig
from coreason_certflow.exceptions import SigningError
from coreason_certflow.utils.logger import logger


class CredentialBundle(BaseModel):
    """
    Immutable application credentials.

    Attributes:
        tenant_id (str): Directory (tenant) ID.
        client_id (str): Application (client) ID. Issuer and subject of every client assertion.
        redirect_uri (str): Registered callback URL.
        scope (str): Space-delimited scopes requested on every grant.
        private_key (SecretBytes): PEM private key. Hidden from repr and serialization.
        certificate (bytes): Public certificate exactly as read from disk (PEM or DER).
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    client_id: str
    redirect_uri: str
    scope: str
    private_key: SecretBytes
    certificate: bytes

    def __repr__(self) -> str:
        return f"CredentialBundle(tenant_id={self.tenant_id!r}, client_id={self.client_id!r}, private_key='<REDACTED>')"

    def __str__(self) -> str:
        return self.__repr__()


def _read_file(path: Path, label: str) -> bytes:
    try:
        data = path.read_bytes()
    except OSError as e:
        raise SigningError(f"Unable to read {label}: {path}") from e
    if not data:
        raise SigningError(f"{label.capitalize()} is empty: {path}")
    return data


def load_credentials(config: CertflowConfig) -> CredentialBundle:
    """
    Reads the private key and public certificate referenced by the configuration.

    Args:
        config: The configuration object.

    Returns:
        CredentialBundle: Read-only credentials, safe to share across requests.

    Raises:
        SigningError: If either file is missing or unreadable.
    """
    private_key = _read_file(config.private_key_path, "private key")
    certificate = _read_file(config.public_cert_path, "public certificate")

    logger.info(f"Loaded client credentials for application {config.client_id}")

    return CredentialBundle(
        tenant_id=config.tenant_id,
        client_id=config.client_id,
        redirect_uri=config.redirect_uri,
        scope=config.scope,
        private_key=SecretBytes(private_key),
        certificate=certificate,
    )
