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
Configuration for the coreason-certflow package.
"""

from pathlib import Path
from urllib.parse import urlparse

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CertflowConfig(BaseSettings):
    """
    Configuration settings for coreason-certflow.

    Attributes:
        tenant_id (str): Directory (tenant) ID of the Identity Provider.
        client_id (str): Application (client) ID registered with the Identity Provider.
        redirect_uri (str): Callback URL registered with the Identity Provider.
        scope (str): Space-delimited scopes. `offline_access` is needed to obtain a refresh token.
        private_key_path (Path): PEM-encoded private key used to sign client assertions.
        public_cert_path (Path): Public certificate (PEM or DER) uploaded to the Identity Provider.
        authority (str): Base URL of the Identity Provider.
        post_logout_redirect_uri (str | None): Where the provider sends the browser after sign-out.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_CERTFLOW_",
        case_sensitive=False,
    )

    # Must precede the URL fields so their validators can read it
    unsafe_local_dev: bool = False

    tenant_id: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    redirect_uri: str
    scope: str = "openid profile email offline_access"
    private_key_path: Path
    public_cert_path: Path
    authority: str = "https://login.microsoftonline.com"
    post_logout_redirect_uri: str | None = None

    http_timeout: float = Field(10.0, gt=0, description="Timeout in seconds for token endpoint calls.")
    retry_budget: int = Field(1, ge=0, description="Retries on transport failure for the refresh grant.")
    retry_backoff: float = Field(1.0, ge=0, description="Fixed wait in seconds before a retry.")
    assertion_lifetime: int = Field(600, gt=0)
    refresh_threshold: int = Field(300, ge=0, description="Refresh when fewer seconds than this remain.")
    inactivity_timeout: int = Field(7200, gt=0, description="Sliding session inactivity timeout in seconds.")

    success_redirect: str = "/home"
    anonymous_redirect: str = "/"
    timeout_redirect: str = "/?timeout=1"
    error_redirect: str = "/error"

    audit_log_path: Path = Path("logs/login_audit.log")
    session_secret: SecretStr = SecretStr("coreason-unsafe-default-session-secret")

    debug_enabled: bool = False
    debug_ip_allowlist: list[str] = Field(default_factory=lambda: ["127.0.0.1"])

    @field_validator("authority")
    @classmethod
    def normalize_authority(cls, v: str) -> str:
        """
        Strips trailing slashes and whitespace from the authority URL.
        """
        return v.strip().rstrip("/")

    @field_validator("authority", "redirect_uri", "post_logout_redirect_uri", mode="after")
    @classmethod
    def validate_https(cls, v: str | None, info: ValidationInfo) -> str | None:
        """
        Ensures that provider-facing URLs use HTTPS, unless strictly opted out for local dev.
        """
        if v is None:
            return v
        parsed = urlparse(v)
        if parsed.scheme == "https":
            return v
        if parsed.scheme == "http" and info.data.get("unsafe_local_dev", False):
            return v
        raise ValueError(
            f"{info.field_name} must use HTTPS. Set 'unsafe_local_dev=True' only for local testing."
        )

    @property
    def tenant_authority(self) -> str:
        return f"{self.authority}/{self.tenant_id}"

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.tenant_authority}/oauth2/v2.0/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.tenant_authority}/oauth2/v2.0/token"

    @property
    def end_session_endpoint(self) -> str:
        return f"{self.tenant_authority}/oauth2/v2.0/logout"
