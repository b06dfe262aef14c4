"""Caller identification for the HTTP layer.

Credentials are issued elsewhere; this module only sorts requests into caller
classes for rate limiting and host scoping:

  Authorization: Bearer <configured agent key>   → automation
  Authorization: Bearer <anything else>          → 401 Unauthorized
  X-Host-Id: <host>  (pre-verified upstream)     → console
  neither                                        → anonymous, keyed by client IP
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from booking_engine.ratelimit import ANONYMOUS, AUTOMATION, CONSOLE
from booking_engine.runtime import get_engine

log = logging.getLogger("booking_engine.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Caller:
    caller_class: str
    identity: str  # origin or credential; the limiter only stores its fingerprint
    host_id: Optional[str] = None


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def identify_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> Caller:
    """FastAPI dependency: classify the caller of this request."""
    if credentials is not None:
        keys = get_engine().settings.agent_api_keys
        if any(hmac.compare_digest(credentials.credentials, key) for key in keys):
            return Caller(AUTOMATION, credentials.credentials)
        log.warning("Rejected unknown agent key from %s", client_ip(request))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid agent API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    host_id = request.headers.get("x-host-id", "").strip()
    if host_id:
        return Caller(CONSOLE, host_id, host_id=host_id)
    return Caller(ANONYMOUS, client_ip(request))


async def require_host_identity(caller: Caller = Depends(identify_caller)) -> str:
    """FastAPI dependency: the verified host identity, or 401."""
    if caller.host_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Host identity required.",
        )
    return caller.host_id


def require_host(identity: str, host_id: str) -> None:
    """403 unless the verified host identity owns ``host_id``."""
    if identity != host_id:
        log.warning("Host %s attempted to act on host %s", identity, host_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to act for this host.",
        )


async def require_automation(caller: Caller = Depends(identify_caller)) -> Caller:
    if caller.caller_class != AUTOMATION:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Agent API key required.",
        )
    return caller
