"""Bearer-token guard for the panel API."""
from __future__ import annotations

import hashlib
import logging
import secrets
from typing import Iterable, Tuple

from fastapi import HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger("vpnpanel.security")

API_TOKEN_BYTES = 32


def token_fingerprint(token: str) -> str:
    """Short, non-reversible identifier of a token for log lines."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


class TokenAuth:
    """Accepts requests carrying one of the configured API tokens.

    Only SHA-256 digests of the tokens are kept; the presented token is
    hashed and compared against every digest in constant time.
    """

    def __init__(self, tokens: Iterable[str]):
        digests: Tuple[bytes, ...] = tuple(
            hashlib.sha256(token.strip().encode("utf-8")).digest() for token in tokens if token.strip()
        )
        if not digests:
            raise ValueError("At least one API token must be provided (set VPNPANEL_API_TOKENS)")
        self._digests = digests
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> None:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        presented = hashlib.sha256(credentials.credentials.encode("utf-8")).digest()
        matched = 0
        for digest in self._digests:
            matched |= secrets.compare_digest(presented, digest)
        if not matched:
            client = request.client.host if request.client else "unknown"
            logger.warning(
                "Rejected API token %s from %s", token_fingerprint(credentials.credentials), client
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API token")
        request.state.token_fingerprint = token_fingerprint(credentials.credentials)


def generate_api_token() -> str:
    return secrets.token_urlsafe(API_TOKEN_BYTES)


__all__ = ["TokenAuth", "generate_api_token", "token_fingerprint"]
