import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import APIKeyHeader
from slowapi import Limiter
from slowapi.util import get_remote_address

from ..core.config import API_KEY, RATE_LIMIT_ENABLED
from ..core.models import Actor

logger = logging.getLogger(__name__)

# --- API Key Authentication ---
API_KEY_NAME = "X-API-Key"
api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)


async def get_api_key(api_key: str = Depends(api_key_header)):
    """
    Dependency to validate the API key from the request header.

    Raises HTTPException 401 if the key is missing or invalid.
    """
    if not API_KEY:
        # If the server has no API_KEY configured, authentication is disabled.
        # This allows the service to run without security for local development.
        logger.warning("API_KEY not configured. Allowing request without authentication.")
        return None

    if not api_key:
        logger.warning("API key missing from request.")
        raise HTTPException(status_code=401, detail="API key is missing")

    if api_key != API_KEY:
        logger.warning("Invalid API key received.")
        raise HTTPException(status_code=401, detail="Invalid API key")

    return api_key


# --- Caller identity ---
# The identity gateway in front of this service authenticates users and
# forwards who they are; the headers are trusted as-is.
async def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="User identity is missing")
    return Actor(user_id=x_user_id.strip(), role=(x_user_role or "user").strip().lower())


# --- Rate Limiting Setup ---
# The key function uses the client's IP address to identify them.
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)
