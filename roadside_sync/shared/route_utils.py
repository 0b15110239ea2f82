from loguru import logger


def bearer_token(authorization: str | None) -> str | None:
    """
    Pull the token out of an `Authorization: Bearer <token>` header.
    Anything else (missing header, other scheme, empty token) yields None.
    """
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def log_request(action: str, **extra) -> None:
    """Single structured log entry per sandbox request."""
    log_str = f"action={action}"
    for k, v in extra.items():
        log_str += f" {k}={v}"
    logger.info(log_str)
