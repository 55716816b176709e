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
FlowOrchestrator component: login, callback, silent refresh and logout.

Every public step takes the session explicitly and returns a `FlowResult`.
Failures raised by the signer and the exchange client are converted here into
a redirect or JSON error plus exactly one audit entry.

Known limitation: the identity token's signature is NOT verified. Its claims are
trusted because the token arrives directly from the provider's token endpoint
over TLS, in response to a request authenticated with our client assertion.
"""

import json
import secrets
import time
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlencode

import httpx
from anyio.from_thread import BlockingPortal, start_blocking_portal
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from coreason_certflow.config import CertflowConfig
from coreason_certflow.credentials import CredentialBundle
from coreason_certflow.exceptions import (
    CoreasonCertflowError,
    InvalidStateError,
    ProtocolError,
    ProviderError,
    SigningError,
    TransportError,
)
from coreason_certflow.exchange import TokenExchangeClient
from coreason_certflow.models import ClientAssertion, FlowResult, FlowState, Session
from coreason_certflow.session import SessionLocks, enforce_inactivity
from coreason_certflow.signer import AssertionSigner
from coreason_certflow.sinks import AuditSink, FileAuditSink
from coreason_certflow.utils.encoding import decode_unverified_claims
from coreason_certflow.utils.logger import log_diagnostic, logger


class FlowOrchestratorAsync:
    """
    Async implementation of the relying-party flow (The Core).
    Handles resources via async context manager.
    """

    def __init__(
        self,
        config: CertflowConfig,
        credentials: CredentialBundle,
        client: httpx.AsyncClient | None = None,
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the FlowOrchestratorAsync.

        Args:
            config: The configuration object.
            credentials: Credentials loaded by `load_credentials`.
            client: External async client (optional). If not provided, an instrumented client is created.
            audit: Audit sink. Defaults to a `FileAuditSink` at `config.audit_log_path`.
            clock: Returns the current epoch seconds. Injected for tests.
        """
        self.config = config
        self.credentials = credentials
        self.clock = clock
        self._internal_client = client is None

        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(timeout=config.http_timeout)
            HTTPXClientInstrumentor().instrument_client(self._client)

        self._owned_audit: FileAuditSink | None = None
        if audit is not None:
            self.audit: AuditSink = audit
        else:
            self._owned_audit = FileAuditSink(config.audit_log_path)
            self.audit = self._owned_audit
        self.signer = AssertionSigner(credentials, config.token_endpoint, lifetime=config.assertion_lifetime)
        self.exchange_client = TokenExchangeClient(
            config.token_endpoint,
            self._client,
            timeout=config.http_timeout,
            retry_backoff=config.retry_backoff,
        )
        self.locks = SessionLocks()

    async def __aenter__(self) -> "FlowOrchestratorAsync":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._internal_client:
            await self._client.aclose()
        if self._owned_audit is not None:
            self._owned_audit.close()

    def _now(self) -> int:
        return int(self.clock())

    def _mint_assertion(self) -> ClientAssertion:
        return self.signer.build_assertion(self._now())

    def debug_detail_allowed(self, client_ip: str | None) -> bool:
        """Diagnostic detail is shown only with the debug flag on AND an allow-listed source IP."""
        return self.config.debug_enabled and client_ip is not None and client_ip in self.config.debug_ip_allowlist

    def _error_redirect(self, error: Exception, state: FlowState, client_ip: str | None) -> FlowResult:
        location = self.config.error_redirect
        if self.debug_detail_allowed(client_ip):
            location = f"{location}?{urlencode({'detail': f'{type(error).__name__}: {error}'})}"
        return FlowResult.redirect(location, state)

    def state_of(self, session: Session) -> FlowState:
        """
        Derives the flow state of a session at the current time.

        Returns:
            FlowState: ANONYMOUS without identity, AUTHENTICATED while the access token has more
            than `refresh_threshold` seconds left, REFRESH_DUE inside the threshold, EXPIRED after expiry.
        """
        if not session.is_authenticated:
            return FlowState.ANONYMOUS
        remaining = self._remaining(session)
        if remaining > self.config.refresh_threshold:
            return FlowState.AUTHENTICATED
        if remaining > 0:
            return FlowState.REFRESH_DUE
        return FlowState.EXPIRED

    def _remaining(self, session: Session) -> int:
        if session.token_expires is None:
            return 0
        return session.token_expires - self._now()

    def begin_request(self, session: Session) -> bool:
        """
        Applies the inactivity policy. Call once at the start of every request.

        Returns:
            bool: True if the session had been idle too long and was cleared.
        """
        user = session.username
        timed_out = enforce_inactivity(session, self._now(), self.config.inactivity_timeout)
        if timed_out:
            self.locks.discard(session.session_id)
            self.audit.record(f"SESSION TIMEOUT: {user}")
            logger.info("Session cleared after inactivity timeout")
        return timed_out

    def login(self, session: Session) -> FlowResult:
        """
        Starts the authorization-code flow.

        A fresh `state` is bound to the session and checked again on callback.

        Returns:
            FlowResult: Redirect to the provider's authorization endpoint.
        """
        state = secrets.token_urlsafe(32)
        session.oauth_state = state

        params = {
            "client_id": self.credentials.client_id,
            "response_type": "code",
            "redirect_uri": self.credentials.redirect_uri,
            "response_mode": "query",
            "scope": self.credentials.scope,
            "state": state,
        }
        return FlowResult.redirect(f"{self.config.authorization_endpoint}?{urlencode(params)}", self.state_of(session))

    async def callback(
        self,
        session: Session,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
        client_ip: str | None = None,
    ) -> FlowResult:
        """
        Handles the provider's redirect back with an authorization code.

        Order of checks:
        1. A code this session already redeemed short-circuits to the success page with no token call.
        2. A provider `error` parameter is audited and sent to the error page.
        3. A missing code goes to the anonymous landing page.
        4. The returned `state` must match the one stored at login.
        5. The code is redeemed with a fresh client assertion; the response must contain an id_token.

        Args:
            session: The caller's session.
            code: The `code` query parameter.
            state: The `state` query parameter.
            error: The `error` query parameter, if the provider refused.
            error_description: The `error_description` query parameter.
            client_ip: Caller address, used only to gate diagnostic detail.

        Returns:
            FlowResult: Redirect to the success, anonymous or error page.
        """
        if code and session.last_auth_code == code:
            logger.info("Authorization code already redeemed in this session, skipping token exchange")
            return FlowResult.redirect(self.config.success_redirect, self.state_of(session))

        # Codes are single-use whatever the outcome below
        session.last_auth_code = code or None

        if error:
            self.audit.record(f"LOGIN DENIED: {error} | {error_description or 'no description'}")
            log_diagnostic("Provider returned an authorization error", {"error": error, "ip": client_ip})
            return self._error_redirect(ProtocolError(error), FlowState.ANONYMOUS, client_ip)

        if not code:
            return FlowResult.redirect(self.config.anonymous_redirect, self.state_of(session))

        expected_state, session.oauth_state = session.oauth_state, None
        if not expected_state or not state or not secrets.compare_digest(state, expected_state):
            err = InvalidStateError("Callback state does not match the state issued at login")
            self.audit.record("LOGIN REJECTED: state mismatch")
            log_diagnostic("Callback state mismatch", {"ip": client_ip, "type": type(err).__name__})
            return self._error_redirect(err, FlowState.ANONYMOUS, client_ip)

        try:
            tokens = await self.exchange_client.redeem_authorization_code(self.credentials, code, self._mint_assertion)
            if not tokens.id_token:
                raise ProtocolError("Token response missing id_token")
            claims = decode_unverified_claims(tokens.id_token)
        except CoreasonCertflowError as e:
            self.audit.record(f"LOGIN FAILED: {self._describe_failure(e)}")
            log_diagnostic(
                "Authorization code redemption failed",
                {"operation": "auth_callback", "type": type(e).__name__, "message": str(e), "ip": client_ip},
                level="ERROR",
            )
            return self._error_redirect(e, FlowState.ANONYMOUS, client_ip)

        session.user = claims
        # A new sign-in never inherits the previous identity's refresh token
        session.apply_tokens(tokens, self._now())

        self.audit.record(f"LOGIN: {session.username}")
        logger.info("Authorization code redeemed, session authenticated")
        return FlowResult.redirect(self.config.success_redirect, FlowState.AUTHENTICATED)

    async def refresh(self, session: Session, client_ip: str | None = None) -> FlowResult:
        """
        Silently renews the access token when it is close to expiry.

        Refresh attempts for one session are serialized; a caller that waited on the
        lock re-checks the expiry and returns `ok` if another request already renewed it.

        Args:
            session: The caller's session.
            client_ip: Caller address, used only to gate diagnostic detail.

        Returns:
            FlowResult: JSON body with `status` ok / refreshed / error.
        """
        if not session.refresh_token:
            return self._no_refresh_token()

        if self._remaining(session) > self.config.refresh_threshold:
            return self._still_valid(session)

        async with self.locks.get(session.session_id):
            if not session.refresh_token:
                return self._no_refresh_token()
            if self._remaining(session) > self.config.refresh_threshold:
                return self._still_valid(session)

            refresh_token = session.refresh_token
            user = session.username

            try:
                tokens = await self.exchange_client.redeem_refresh_token(
                    self.credentials, refresh_token, self._mint_assertion, retry_budget=self.config.retry_budget
                )
            except SigningError as e:
                self.audit.record(f"TOKEN REFRESH ERROR: Cannot build assertion - {e}")
                log_diagnostic("Client assertion build failed", {"operation": "refresh", "ip": client_ip}, "ERROR")
                return self._json_error("Assertion build failed", 500, FlowState.REFRESH_DUE, e, client_ip)
            except CoreasonCertflowError as e:
                self.audit.record(f"TOKEN REFRESH FAILED: {user} | {self._describe_failure(e)}")
                log_diagnostic(
                    "Token refresh failed",
                    {"operation": "refresh", "type": type(e).__name__, "ip": client_ip},
                    level="WARNING",
                )
                return self._json_error("Refresh failed. Please sign in again.", 401, FlowState.EXPIRED, e, client_ip)

            if session.refresh_token != refresh_token:
                # Logged out or timed out while the request was in flight
                self.audit.record(f"TOKEN REFRESH DISCARDED: {user} | session changed during refresh")
                err = ProtocolError("Session changed during refresh")
                return self._json_error("Refresh failed. Please sign in again.", 401, FlowState.EXPIRED, err, client_ip)

            session.apply_tokens(tokens, self._now(), keep_refresh_token=True)

        self.audit.record(f"TOKEN REFRESH: {user}")
        return FlowResult.json_body(
            {"status": "refreshed", "expires_in": tokens.expires_in, "message": "Access token successfully renewed."},
            FlowState.AUTHENTICATED,
        )

    def logout(self, session: Session) -> FlowResult:
        """
        Clears the local session and sends the browser to the provider's end-session endpoint.

        The provider-side session is ended by the provider, not here.

        Returns:
            FlowResult: Redirect to the end-session endpoint.
        """
        self.audit.record(f"LOGOUT initiated by {session.username}")
        session.clear()
        self.locks.discard(session.session_id)

        location = self.config.end_session_endpoint
        if self.config.post_logout_redirect_uri:
            location = f"{location}?{urlencode({'post_logout_redirect_uri': self.config.post_logout_redirect_uri})}"
        return FlowResult.redirect(location, FlowState.ANONYMOUS)

    def _still_valid(self, session: Session) -> FlowResult:
        return FlowResult.json_body(
            {"status": "ok", "message": "Still valid", "expires_in": self._remaining(session)},
            self.state_of(session),
        )

    def _no_refresh_token(self) -> FlowResult:
        return FlowResult.json_body({"status": "error", "message": "No refresh token."}, FlowState.ANONYMOUS, 403)

    def _json_error(
        self, message: str, status_code: int, state: FlowState, error: Exception, client_ip: str | None
    ) -> FlowResult:
        body: dict[str, Any] = {"status": "error", "message": message}
        if self.debug_detail_allowed(client_ip):
            body["detail"] = f"{type(error).__name__}: {error}"
        return FlowResult.json_body(body, state, status_code)

    @staticmethod
    def _describe_failure(error: CoreasonCertflowError) -> str:
        if isinstance(error, ProviderError):
            body = json.dumps(error.body) if error.body else str(error)
            return f"HTTP {error.status_code} | {body}"
        if isinstance(error, TransportError):
            return f"HTTP 0 | {error} (attempts: {error.attempts})"
        if isinstance(error, SigningError):
            return f"Cannot build assertion - {error}"
        return str(error)


class FlowOrchestrator:
    """
    Sync facade for FlowOrchestratorAsync.

    Runs the async core on a private event loop thread so it can be driven from
    synchronous request handlers. Use as a context manager to release the loop
    and the internal HTTP client.
    """

    def __init__(
        self,
        config: CertflowConfig,
        credentials: CredentialBundle,
        client: httpx.AsyncClient | None = None,
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._async = FlowOrchestratorAsync(config, credentials, client=client, audit=audit, clock=clock)
        self._portal_cm = start_blocking_portal()
        self._portal: BlockingPortal | None = self._portal_cm.__enter__()

    def __enter__(self) -> "FlowOrchestrator":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._portal is None:
            return
        try:
            self._portal.call(self._async.__aexit__, None, None, None)
        finally:
            self._portal = None
            self._portal_cm.__exit__(None, None, None)

    def _call(self, func: Callable[..., Awaitable[FlowResult]], *args: Any) -> FlowResult:
        if self._portal is None:
            raise CoreasonCertflowError("FlowOrchestrator is closed")
        return self._portal.call(func, *args)

    def state_of(self, session: Session) -> FlowState:
        return self._async.state_of(session)

    def begin_request(self, session: Session) -> bool:
        return self._async.begin_request(session)

    def login(self, session: Session) -> FlowResult:
        return self._async.login(session)

    def callback(
        self,
        session: Session,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
        client_ip: str | None = None,
    ) -> FlowResult:
        return self._call(self._async.callback, session, code, state, error, error_description, client_ip)

    def refresh(self, session: Session, client_ip: str | None = None) -> FlowResult:
        return self._call(self._async.refresh, session, client_ip)

    def logout(self, session: Session) -> FlowResult:
        return self._async.logout(session)
