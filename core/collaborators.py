"""
External Collaborators

User sessions and stored exchange credentials live outside this service.
These protocols describe the only two things the API needs from them; the
hosting application installs concrete implementations on app.state at
startup:

    app.state.session_validator = MySessionStore()
    app.state.credentials_lookup = MyCredentialVault()

Routes that need them fail with 503 until they are installed.
"""

from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel

from core.schemas import ExchangeCredentials


class AuthenticatedUser(BaseModel):
    """The caller behind a valid session token."""

    id: str
    email: Optional[str] = None


@runtime_checkable
class SessionValidator(Protocol):
    async def validate_session(self, token: str) -> Optional[AuthenticatedUser]:
        """Return the session's user, or None if the token is unknown or expired."""
        ...


@runtime_checkable
class CredentialsLookup(Protocol):
    async def get_credentials(self, user_id: str, exchange: str) -> Optional[ExchangeCredentials]:
        """Return the user's stored API key for a canonical exchange id, or None."""
        ...
