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
Data models for the coreason-certflow package.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_EXPIRES_IN = 3600


class FlowState(StrEnum):
    ANONYMOUS = "anonymous"
    CODE_RECEIVED = "code_received"
    AUTHENTICATED = "authenticated"
    REFRESH_DUE = "refresh_due"
    EXPIRED = "expired"


class ClientAssertion(BaseModel):
    """
    A signed RFC 7523 client assertion. Minted per token endpoint call, never cached.

    Attributes:
        header (dict[str, Any]): JOSE header including the `x5t` and `x5t#S256` thumbprints.
        claims (dict[str, Any]): aud, iss, sub, jti, nbf, exp.
        token (str): The compact serialization `header.payload.signature`.
    """

    model_config = ConfigDict(frozen=True)

    header: dict[str, Any]
    claims: dict[str, Any]
    token: str

    @property
    def lifetime(self) -> int:
        return int(self.claims["exp"]) - int(self.claims["nbf"])

    def __repr__(self) -> str:
        # The compact token is a bearer credential for its lifetime
        return f"ClientAssertion(header={self.header!r}, jti={self.claims.get('jti')!r}, token='<REDACTED>')"

    def __str__(self) -> str:
        return self.__repr__()


class TokenResponse(BaseModel):
    """
    Response from the token endpoint.

    Attributes:
        access_token (str): The access token issued by the authorization server.
        refresh_token (str | None): The refresh token, if issued. Providers may omit it on refresh.
        id_token (str | None): The ID token, only present on the authorization-code grant.
        token_type (str | None): The type of the token (e.g. "Bearer").
        expires_in (int): Lifetime in seconds of the access token. Defaults to 3600 when missing.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str | None = None
    expires_in: int = DEFAULT_EXPIRES_IN

    @field_validator("expires_in", mode="before")
    @classmethod
    def default_expires_in(cls, v: Any) -> Any:
        if v is None or v == "":
            return DEFAULT_EXPIRES_IN
        return v

    @field_validator("refresh_token", "id_token", mode="before")
    @classmethod
    def empty_as_none(cls, v: Any) -> Any:
        return v or None


class ExchangeResult(BaseModel):
    """
    Raw outcome of a token endpoint call that produced an HTTP response.

    Attributes:
        status_code (int): HTTP status code.
        body (dict[str, Any]): Parsed JSON body, empty when the body was not a JSON object.
        text (str): Raw body text, kept for the audit trail when the body was not JSON.
        attempts (int): Number of POSTs issued, retries included.
    """

    model_config = ConfigDict(frozen=True)

    status_code: int
    body: dict[str, Any] = Field(default_factory=dict)
    text: str = ""
    attempts: int = 1

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


class Session(BaseModel):
    """
    Server-side session record. Owned by the orchestrator for the duration of one request.

    Serializes to plain JSON so any key/value session store can persist it.
    """

    model_config = ConfigDict(validate_assignment=True)

    session_id: str
    user: dict[str, Any] | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires: int | None = None
    last_auth_code: str | None = None
    last_active: int | None = None
    oauth_state: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def is_empty(self) -> bool:
        """True when nothing but the identifier and activity timestamp is set."""
        return all(
            getattr(self, name) is None for name in type(self).model_fields if name not in ("session_id", "last_active")
        )

    @property
    def username(self) -> str:
        if not self.user:
            return "unknown"
        return str(self.user.get("preferred_username") or "unknown")

    def clear(self) -> None:
        """Resets every field except the session identifier."""
        for name in type(self).model_fields:
            if name != "session_id":
                setattr(self, name, None)

    def apply_tokens(self, tokens: TokenResponse, now: int, keep_refresh_token: bool = False) -> None:
        """
        Writes the new token set and expiry in one step.

        Args:
            tokens: The token endpoint response.
            now: Current epoch seconds.
            keep_refresh_token: Keep the previous refresh token when the response has none.
                Only valid for the refresh grant; a code grant replaces the whole set.
        """
        refresh_token = tokens.refresh_token
        if refresh_token is None and keep_refresh_token:
            refresh_token = self.refresh_token
        token_expires = now + tokens.expires_in
        self.access_token = tokens.access_token
        self.refresh_token = refresh_token
        self.token_expires = token_expires

    def __repr__(self) -> str:
        return (
            f"Session(session_id={self.session_id!r}, "
            f"user={'<REDACTED>' if self.user else None}, "
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"token_expires={self.token_expires!r}, "
            f"last_active={self.last_active!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


class FlowResult(BaseModel):
    """
    Outcome of one orchestrator step: either a redirect or a JSON body.

    Attributes:
        state (FlowState): Session state after the step.
        status_code (int): HTTP status to send.
        location (str | None): Redirect target. Set for redirects only.
        body (dict[str, Any] | None): JSON body. Set for JSON results only.
    """

    model_config = ConfigDict(frozen=True)

    state: FlowState
    status_code: int = 302
    location: str | None = None
    body: dict[str, Any] | None = None

    @property
    def is_redirect(self) -> bool:
        return self.location is not None

    @classmethod
    def redirect(cls, location: str, state: FlowState) -> "FlowResult":
        return cls(state=state, status_code=302, location=location)

    @classmethod
    def json_body(cls, body: dict[str, Any], state: FlowState, status_code: int = 200) -> "FlowResult":
        return cls(state=state, status_code=status_code, body=body)
