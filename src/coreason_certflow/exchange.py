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
TokenExchangeClient component for the authorization-code and refresh-token grants.
"""

import json
from collections.abc import Callable

import anyio
import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_certflow.credentials import CredentialBundle
from coreason_certflow.exceptions import ProtocolError, ProviderError, SigningError, TransportError
from coreason_certflow.models import ClientAssertion, ExchangeResult, TokenResponse
from coreason_certflow.utils.logger import logger

tracer = trace.get_tracer(__name__)

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
MAX_RESPONSE_BYTES = 1_000_000


def build_code_grant(credentials: CredentialBundle, code: str, assertion: ClientAssertion) -> dict[str, str]:
    return {
        "client_id": credentials.client_id,
        "scope": credentials.scope,
        "code": code,
        "redirect_uri": credentials.redirect_uri,
        "grant_type": "authorization_code",
        "client_assertion_type": CLIENT_ASSERTION_TYPE,
        "client_assertion": assertion.token,
    }


def build_refresh_grant(
    credentials: CredentialBundle, refresh_token: str, assertion: ClientAssertion
) -> dict[str, str]:
    return {
        "client_id": credentials.client_id,
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "scope": credentials.scope,
        "client_assertion_type": CLIENT_ASSERTION_TYPE,
        "client_assertion": assertion.token,
    }


class TokenExchangeClient:
    """
    Posts grants to the provider's token endpoint.

    Only transport failures (no HTTP response at all) are retried, and only while the
    caller-supplied budget lasts. An HTTP error response is returned as-is: replaying a
    single-use authorization code would fail anyway.

    Attributes:
        token_endpoint (str): The token endpoint URL.
        timeout (float): Per-attempt timeout in seconds.
        retry_backoff (float): Fixed wait in seconds between attempts.
    """

    def __init__(
        self,
        token_endpoint: str,
        client: httpx.AsyncClient,
        timeout: float = 10.0,
        retry_backoff: float = 1.0,
        max_response_bytes: int = MAX_RESPONSE_BYTES,
    ) -> None:
        """
        Initialize the TokenExchangeClient.

        Args:
            token_endpoint: The token endpoint URL.
            client: The async HTTP client to use for requests.
            timeout: Per-attempt timeout in seconds. Defaults to 10.0.
            retry_backoff: Seconds to wait before a retry. Defaults to 1.0.
            max_response_bytes: Reject bodies larger than this. Defaults to 1 MB.
        """
        self.token_endpoint = token_endpoint
        self.client = client
        self.timeout = timeout
        self.retry_backoff = retry_backoff
        self.max_response_bytes = max_response_bytes

    def _parse(self, response: httpx.Response, attempts: int) -> ExchangeResult:
        content = response.content
        if len(content) > self.max_response_bytes:
            raise ProviderError("Token endpoint response too large", status_code=response.status_code)

        text = content.decode("utf-8", errors="replace")
        try:
            data = json.loads(content) if content else {}
        except ValueError:
            data = None

        if isinstance(data, dict):
            return ExchangeResult(status_code=response.status_code, body=data, attempts=attempts)
        return ExchangeResult(status_code=response.status_code, text=text[:2000], attempts=attempts)

    async def exchange(self, build_grant: Callable[[], dict[str, str]], retry_budget: int) -> ExchangeResult:
        """
        Sends one grant to the token endpoint.

        Emits an OpenTelemetry span `token_exchange` with the grant type and attempt count.

        Args:
            build_grant: Returns the form fields of the grant request. Called once per attempt so
                every POST carries a freshly minted client assertion.
            retry_budget: Extra attempts allowed after a transport failure. 0 disables retries.

        Returns:
            ExchangeResult: Status code and parsed body of the first HTTP response received.

        Raises:
            TransportError: If every attempt failed without an HTTP response.
            ProviderError: If the response body exceeds the size limit.
            SigningError: If `build_grant` cannot mint a client assertion.
        """
        remaining = max(retry_budget, 0)
        attempts = 0

        with tracer.start_as_current_span("token_exchange") as span:
            while True:
                attempts += 1
                try:
                    grant_params = build_grant()
                except SigningError as e:
                    span.set_attribute("oauth.attempts", attempts)
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, "client assertion build failed"))
                    raise
                grant_type = grant_params.get("grant_type", "unknown")
                span.set_attribute("oauth.grant_type", grant_type)
                try:
                    response = await self.client.post(
                        self.token_endpoint,
                        data=grant_params,
                        headers={"Accept": "application/json"},
                        timeout=self.timeout,
                    )
                except httpx.TransportError as e:
                    if remaining > 0:
                        remaining -= 1
                        logger.warning(
                            f"Token endpoint unreachable ({type(e).__name__}), "
                            f"retrying in {self.retry_backoff}s ({grant_type})"
                        )
                        span.add_event("retry", {"attempt": attempts})
                        await anyio.sleep(self.retry_backoff)
                        continue

                    span.set_attribute("oauth.attempts", attempts)
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, type(e).__name__))
                    logger.error(f"Token endpoint unreachable after {attempts} attempt(s): {type(e).__name__}")
                    raise TransportError(
                        f"Token endpoint unreachable: {type(e).__name__}: {e}", attempts=attempts
                    ) from e

                span.set_attribute("oauth.attempts", attempts)
                span.set_attribute("http.status_code", response.status_code)
                result = self._parse(response, attempts)
                if result.is_success:
                    span.set_status(Status(StatusCode.OK))
                else:
                    span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
                return result

    def _to_token_response(self, result: ExchangeResult) -> TokenResponse:
        if not result.is_success:
            detail = result.body.get("error_description") or result.body.get("error") or result.text or "no body"
            raise ProviderError(
                f"Token endpoint returned HTTP {result.status_code}: {detail}",
                status_code=result.status_code,
                body=result.body,
            )

        try:
            return TokenResponse(**result.body)
        except ValidationError as e:
            raise ProtocolError(f"Token response missing or invalid fields: {e.error_count()} error(s)") from e

    async def redeem_authorization_code(
        self, credentials: CredentialBundle, code: str, mint_assertion: Callable[[], ClientAssertion]
    ) -> TokenResponse:
        """
        Exchanges an authorization code for tokens. Never retried: codes are single-use.

        Raises:
            SigningError: If the client assertion cannot be built.
            TransportError: If the endpoint could not be reached.
            ProviderError: If the endpoint answered with a non-2xx status.
            ProtocolError: If the response has no access token.
        """
        result = await self.exchange(lambda: build_code_grant(credentials, code, mint_assertion()), retry_budget=0)
        return self._to_token_response(result)

    async def redeem_refresh_token(
        self,
        credentials: CredentialBundle,
        refresh_token: str,
        mint_assertion: Callable[[], ClientAssertion],
        retry_budget: int = 1,
    ) -> TokenResponse:
        """
        Exchanges a refresh token for a new access token.

        A refresh token is not consumed by a request that never reached the provider,
        so transport failures are retried up to `retry_budget` times, each with a new assertion.

        Raises:
            SigningError: If the client assertion cannot be built.
            TransportError: If every attempt failed without an HTTP response.
            ProviderError: If the endpoint answered with a non-2xx status.
            ProtocolError: If the response has no access token.
        """
        result = await self.exchange(
            lambda: build_refresh_grant(credentials, refresh_token, mint_assertion()), retry_budget
        )
        return self._to_token_response(result)

