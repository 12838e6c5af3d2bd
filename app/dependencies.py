"""
FastAPI Dependencies

Resolve per-request collaborators from app.state so that routes never reach
for module-level globals. Tests swap any of these with
app.dependency_overrides.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request

from core.collaborators import AuthenticatedUser, CredentialsLookup, SessionValidator
from services.broker import BrokerConnection
from services.premium_aggregator import PremiumAggregator


SESSION_COOKIE = "auth_token"


def get_broker(request: Request) -> BrokerConnection:
    broker = getattr(request.app.state, "broker", None)
    if broker is None:
        raise HTTPException(status_code=503, detail="Broker is not configured")
    return broker


def get_aggregator(request: Request) -> PremiumAggregator:
    aggregator = getattr(request.app.state, "aggregator", None)
    if aggregator is None:
        aggregator = PremiumAggregator()
        request.app.state.aggregator = aggregator
    return aggregator


def get_session_validator(request: Request) -> SessionValidator:
    validator = getattr(request.app.state, "session_validator", None)
    if validator is None:
        raise HTTPException(status_code=503, detail="Session validation is not configured")
    return validator


def get_credentials_lookup(request: Request) -> CredentialsLookup:
    lookup = getattr(request.app.state, "credentials_lookup", None)
    if lookup is None:
        raise HTTPException(status_code=503, detail="Credential storage is not configured")
    return lookup


def _session_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE)


async def require_user(
    request: Request,
    validator: SessionValidator = Depends(get_session_validator)
) -> AuthenticatedUser:
    """
    Authenticate the caller from "Authorization: Bearer <token>" or the auth_token cookie.

    Raises:
        HTTPException(401): Missing, unknown or expired session
    """
    token = _session_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")

    user = await validator.validate_session(token)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return user
