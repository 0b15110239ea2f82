"""
Where the connection layer gets its identity from.

The app's secure storage lives outside this package; anything with an async
`fetch()` returning Credentials can stand in for it. The ConnectionManager calls
fetch() on every connect and reconnect attempt so a rotated token is picked up.
"""
from typing import Protocol

from roadside_sync.shared.config import Settings
from roadside_sync.shared.errors import ConfigurationError
from roadside_sync.shared.models import Credentials, Role


class CredentialSource(Protocol):
    async def fetch(self) -> Credentials: ...


class StaticCredentialSource:
    def __init__(self, user_id: str | None, role: Role, token: str | None):
        self.credentials = Credentials(user_id=user_id, role=role, token=token)

    async def fetch(self) -> Credentials:
        return self.credentials

    def rotate(self, token: str) -> None:
        self.credentials = self.credentials.model_copy(update={"token": token})


class SettingsCredentialSource:
    """Reads USER_ID / USER_TOKEN from Settings. Used by the CLI."""

    def __init__(self, role: Role, settings: Settings):
        self.role = role
        self.settings = settings

    async def fetch(self) -> Credentials:
        return Credentials(user_id=self.settings.USER_ID, role=self.role, token=self.settings.USER_TOKEN)


def require_complete(credentials: Credentials) -> Credentials:
    if not credentials.user_id:
        raise ConfigurationError(f"No user id for {credentials.role.value} connection")
    if not credentials.token:
        raise ConfigurationError(f"No auth token for {credentials.role.value} connection")
    return credentials
