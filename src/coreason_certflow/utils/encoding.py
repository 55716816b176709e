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
Base64url helpers shared by the assertion signer and the callback flow.
"""

import binascii
import json
from typing import Any

from authlib.common.encoding import urlsafe_b64decode, urlsafe_b64encode

from coreason_certflow.exceptions import ProtocolError


def b64url_encode(data: bytes) -> str:
    """URL-safe base64 without padding (RFC 7515 section 2)."""
    return urlsafe_b64encode(data).decode("ascii")


def b64url_decode(data: str) -> bytes:
    """
    Inverse of `b64url_encode`. Missing padding is restored.

    Raises:
        ValueError: If the input is not valid base64url.
    """
    try:
        return urlsafe_b64decode(data.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64url segment: {e}") from e


def decode_unverified_claims(token: str) -> dict[str, Any]:
    """
    Decodes the payload segment of a compact JWT WITHOUT verifying its signature.

    The identity token is received directly from the provider's token endpoint
    over TLS; that transport is the only thing vouching for it.

    Args:
        token: Compact JWT (header.payload.signature).

    Returns:
        The claims mapping.

    Raises:
        ProtocolError: If the token is not a three-segment JWT with a JSON object payload.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise ProtocolError("Identity token is not a compact JWT")

    try:
        claims = json.loads(b64url_decode(parts[1]))
    except (ValueError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Identity token payload is not valid JSON: {e}") from e

    if not isinstance(claims, dict):
        raise ProtocolError("Identity token payload is not a JSON object")
    return claims
