"""Identity token parsing and validation.

``parse`` only decodes the compact serialization. Claim checks (expiry,
audience, issuer) and signature verification are separate steps so the login
flow can decide which of them apply.
"""

import json
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx
from authlib.common.encoding import to_bytes, urlsafe_b64decode
from authlib.jose import JsonWebKey, KeySet
from authlib.jose import jwt as authlib_jwt
from authlib.jose.errors import JoseError

from oidcauth.exceptions import (
    InvalidTokenError,
    KeyRetrievalError,
    MalformedTokenError,
    SignatureInvalidError,
)
from oidcauth.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class IdToken:
    """A decoded identity token. Immutable once parsed."""

    raw: str = field(repr=False)
    header: dict[str, Any]
    claims: dict[str, Any]

    @property
    def issuer(self) -> str | None:
        return self.claims.get("iss")

    @property
    def subject(self) -> str | None:
        return self.claims.get("sub")

    @property
    def audience(self) -> list[str]:
        aud = self.claims.get("aud")
        if aud is None:
            return []
        if isinstance(aud, str):
            return [aud]
        return [a for a in aud if isinstance(a, str)]

    @property
    def expiry(self) -> datetime | None:
        return _to_datetime(self.claims.get("exp"))

    @property
    def issued_at(self) -> datetime | None:
        return _to_datetime(self.claims.get("iat"))

    def claim(self, name: str) -> Any:
        """Return a claim value, or None when absent."""
        return self.claims.get(name)


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    try:
        return datetime.fromtimestamp(value, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def _decode_segment(segment: str, name: str) -> dict[str, Any]:
    try:
        decoded = json.loads(urlsafe_b64decode(to_bytes(segment)))
    except (ValueError, TypeError) as e:
        raise MalformedTokenError(f"Could not decode token {name}: {e}") from e
    if not isinstance(decoded, dict):
        raise MalformedTokenError(f"Token {name} is not a JSON object")
    return decoded


def parse(raw: str) -> IdToken:
    """Decode a compact JWT into an IdToken.

    Raises:
        MalformedTokenError: segment count is not 3, or header/payload do
            not decode to JSON objects.
    """
    if not isinstance(raw, str) or not raw:
        raise MalformedTokenError("Token is empty")

    segments = raw.split(".")
    if len(segments) != 3:
        raise MalformedTokenError(f"Token has {len(segments)} segments, expected 3")

    header_segment, payload_segment, signature_segment = segments
    header = _decode_segment(header_segment, "header")
    claims = _decode_segment(payload_segment, "payload")
    try:
        urlsafe_b64decode(to_bytes(signature_segment))
    except (ValueError, TypeError) as e:
        raise MalformedTokenError(f"Could not decode token signature: {e}") from e

    return IdToken(raw=raw, header=header, claims=claims)


def validate_claims(
    token: IdToken,
    client_id: str,
    issuer: str = "",
    leeway: int = 0,
    now: float | None = None,
    nonce: str | None = None,
) -> None:
    """Check expiry, audience and (when configured) issuer and nonce.

    Raises:
        InvalidTokenError: on any failed check.
    """
    now = time.time() if now is None else now

    exp = token.claim("exp")
    if isinstance(exp, bool) or not isinstance(exp, int | float):
        raise InvalidTokenError("Token has no usable 'exp' claim")
    if exp + leeway < now:
        raise InvalidTokenError("Token has expired")

    if client_id not in token.audience:
        raise InvalidTokenError(
            f"Token audience {token.audience!r} does not include client {client_id!r}"
        )

    if issuer and token.issuer != issuer:
        raise InvalidTokenError(f"Token issuer {token.issuer!r} is not {issuer!r}")

    if nonce is not None and token.claim("nonce") != nonce:
        raise InvalidTokenError("Token nonce does not match the login request")


def verify_signature(token: IdToken, keys: KeySet) -> None:
    """Verify the token signature against the IdP key set.

    Raises:
        SignatureInvalidError: the signature does not verify, or no key
            matches the token's key id.
    """
    try:
        authlib_jwt.decode(token.raw, keys)
    except (JoseError, ValueError) as e:
        raise SignatureInvalidError(f"Token signature verification failed: {e}") from e


class KeySetProvider:
    """Fetches and caches the IdP's JSON Web Key Set."""

    def __init__(self, jwks_uri: str, http_client: httpx.AsyncClient | None = None) -> None:
        self._jwks_uri = jwks_uri
        self._http_client = http_client
        self._keys: KeySet | None = None

    async def get_keys(self) -> KeySet:
        if self._keys is not None:
            return self._keys

        if not self._jwks_uri:
            raise KeyRetrievalError("No JWKS URI configured")

        try:
            if self._http_client is not None:
                resp = await self._http_client.get(self._jwks_uri)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(self._jwks_uri)
            resp.raise_for_status()
            self._keys = JsonWebKey.import_key_set(resp.json())
        except (httpx.HTTPError, ValueError, JoseError) as e:
            raise KeyRetrievalError(f"Could not load IdP keys from {self._jwks_uri}: {e}") from e

        logger.info("IdP key set loaded", jwks_uri=self._jwks_uri, count=len(self._keys.keys))
        return self._keys

    def invalidate(self) -> None:
        """Drop the cached keys so the next call refetches (key rotation)."""
        self._keys = None
