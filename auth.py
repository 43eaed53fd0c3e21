import hmac
import logging
from typing import Optional, Protocol

from errors import AuthenticationError

logger = logging.getLogger("metrics-hub.auth")


class ApiKeyValidator(Protocol):
    """Device identity collaborator: returns the authenticated device id, or None."""

    async def validate(self, api_key: str, device_id: str) -> Optional[str]:
        ...


class StaticApiKeyValidator:
    """Accepts one shared key (INGEST_API_KEY) for every device."""

    def __init__(self, expected_key: str):
        self._expected_key = expected_key

    async def validate(self, api_key: str, device_id: str) -> Optional[str]:
        if not api_key or not hmac.compare_digest(api_key, self._expected_key):
            return None
        return device_id


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise AuthenticationError("Invalid Authorization format")
    return token.strip()


async def authenticate_device(validator: ApiKeyValidator, authorization: Optional[str], device_id: str) -> str:
    token = bearer_token(authorization)
    resolved = await validator.validate(token, device_id)
    if resolved is None:
        logger.warning("Rejected ingest credentials device_id=%s", device_id)
        raise AuthenticationError("Invalid API key or device")
    return resolved
