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
AssertionSigner component for building RFC 7523 client assertions.

Instead of a client secret, the application proves its identity with a short-lived
JWT signed by the private key whose certificate is registered with the provider.
The `x5t` / `x5t#S256` header fields let the provider locate that certificate.
"""

import base64
import binascii
import hashlib
import json
import re
import secrets
import time
from typing import Any

from authlib.jose import JsonWebKey, JsonWebSignature
from authlib.jose.errors import JoseError
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_certflow.credentials import CredentialBundle
from coreason_certflow.exceptions import SigningError
from coreason_certflow.models import ClientAssertion
from coreason_certflow.utils.encoding import b64url_encode
from coreason_certflow.utils.logger import logger

tracer = trace.get_tracer(__name__)

PEM_BOUNDARY = re.compile(rb"-----(BEGIN|END)[^-]*CERTIFICATE-----")
SIGNING_ALGORITHM = "RS256"
DEFAULT_ASSERTION_LIFETIME = 600


def load_certificate_der(data: bytes) -> bytes:
    """
    Normalizes a certificate to its binary DER encoding.

    PEM input has its BEGIN/END lines stripped and all whitespace removed before
    base64 decoding. Anything else is taken to be DER already.

    Args:
        data: Certificate bytes as read from disk.

    Returns:
        The DER encoded certificate.

    Raises:
        SigningError: If the data does not decode to an X.509 certificate.
    """
    if b"-----BEGIN" in data:
        body = PEM_BOUNDARY.sub(b"", data)
        body = b"".join(body.split())
        try:
            der = base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SigningError(f"Malformed PEM certificate: {e}") from e
    else:
        der = data

    try:
        x509.load_der_x509_certificate(der)
    except ValueError as e:
        raise SigningError(f"Malformed certificate: {e}") from e

    return der


def certificate_thumbprints(der: bytes) -> tuple[str, str]:
    """
    Computes the SHA-1 (`x5t`) and SHA-256 (`x5t#S256`) thumbprints of a DER certificate,
    both base64url encoded without padding.
    """
    sha1 = b64url_encode(hashlib.sha1(der).digest())  # noqa: S324 - mandated by RFC 7515 x5t
    sha256 = b64url_encode(hashlib.sha256(der).digest())
    return sha1, sha256


class AssertionSigner:
    """
    Builds signed client assertions for the token endpoint.

    The certificate thumbprints and parsed private key are computed once and shared;
    every call to `build_assertion` mints a fresh token with a new `jti`.

    Attributes:
        credentials (CredentialBundle): The application credentials.
        audience (str): The token endpoint URL.
        lifetime (int): Seconds between `nbf` and `exp`.
    """

    def __init__(
        self,
        credentials: CredentialBundle,
        audience: str,
        lifetime: int = DEFAULT_ASSERTION_LIFETIME,
    ) -> None:
        """
        Initialize the AssertionSigner.

        Args:
            credentials: The application credentials.
            audience: The token endpoint URL (the `aud` claim).
            lifetime: Assertion validity in seconds. Defaults to 600.
        """
        self.credentials = credentials
        self.audience = audience
        self.lifetime = lifetime
        self.jws = JsonWebSignature(algorithms=[SIGNING_ALGORITHM])
        self._thumbprints: tuple[str, str] | None = None
        self._key: Any = None

    def _get_thumbprints(self) -> tuple[str, str]:
        if self._thumbprints is None:
            der = load_certificate_der(self.credentials.certificate)
            self._thumbprints = certificate_thumbprints(der)
        return self._thumbprints

    def _get_key(self) -> Any:
        if self._key is None:
            try:
                self._key = JsonWebKey.import_key(self.credentials.private_key.get_secret_value(), {"kty": "RSA"})
            except (JoseError, ValueError, TypeError, UnsupportedAlgorithm) as e:
                raise SigningError(f"Unable to load private key: {type(e).__name__}") from e
        return self._key

    def build_header(self) -> dict[str, Any]:
        x5t, x5t_s256 = self._get_thumbprints()
        return {"alg": SIGNING_ALGORITHM, "typ": "JWT", "x5t": x5t, "x5t#S256": x5t_s256}

    def build_claims(self, now: int) -> dict[str, Any]:
        return {
            "aud": self.audience,
            "iss": self.credentials.client_id,
            "sub": self.credentials.client_id,
            "jti": secrets.token_hex(16),
            "nbf": now,
            "exp": now + self.lifetime,
        }

    def build_assertion(self, now: float | None = None) -> ClientAssertion:
        """
        Builds and signs a new client assertion.

        Emits an OpenTelemetry span `build_client_assertion`.

        Args:
            now: Epoch seconds to use for `nbf`. Defaults to the current time.

        Returns:
            ClientAssertion: The signed assertion. Never reuse it for a second call.

        Raises:
            SigningError: If the certificate or key cannot be used. No partial assertion is returned.
        """
        with tracer.start_as_current_span("build_client_assertion") as span:
            try:
                header = self.build_header()
                key = self._get_key()
                claims = self.build_claims(int(now if now is not None else time.time()))
                payload = json.dumps(claims, separators=(",", ":")).encode("utf-8")

                try:
                    token = self.jws.serialize_compact(header, payload, key)
                except (JoseError, ValueError, TypeError) as e:
                    raise SigningError(f"Unable to sign client assertion: {type(e).__name__}") from e

            except SigningError as e:
                logger.error(f"Client assertion build failed: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            span.set_status(Status(StatusCode.OK))
            return ClientAssertion(header=header, claims=claims, token=token.decode("ascii"))
