"""
MODULE OVERVIEW:
Application-wide configuration using Pydantic Settings.

WHAT IS HAPPENING HERE:
Every timing constant of the sync layer lives here: reconnect backoff, poll cadence,
poll budget. Components never read these directly; they receive explicit arguments
and the wiring points (RoleSession.from_settings, the CLI) pull defaults from here.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    API_BASE_URL: str = "http://127.0.0.1:8000"
    WS_BASE_URL: str = "ws://127.0.0.1:8000"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    HTTP_TIMEOUT_S: float = 10.0

    # Push channel reconnection
    RECONNECT_BASE_DELAY_S: float = 3.0
    RECONNECT_MAX_DELAY_S: float = 30.0
    RECONNECT_MAX_ATTEMPTS: int = 5

    # 0 means unbounded
    OUTBOUND_QUEUE_MAXSIZE: int = 0

    # Status polling (60 x 5s is roughly five minutes of searching)
    POLL_INTERVAL_MS: int = 5000
    POLL_MAX_ATTEMPTS: int = 60

    # Credentials for the CLI; the app proper supplies its own CredentialSource
    USER_ID: str | None = None
    USER_TOKEN: str | None = None

    # Sandbox backend
    SANDBOX_MATCH_AFTER_POLLS: int = 3
    SANDBOX_CUSTOMER_REJECT: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = 'ignore'


settings = Settings()
