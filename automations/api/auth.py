import hmac

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from automations import config

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)


async def verify_api_key(
    api_key: str | None = Security(api_key_header),
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
):
    """Accept the shared secret as ``X-API-Key`` or as a bearer token (cron callers)."""
    supplied = api_key or (credentials.credentials if credentials else None)
    if not supplied:
        raise HTTPException(status_code=401, detail="Missing API key")
    if not hmac.compare_digest(supplied.encode(), config.API_KEY.encode()):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return supplied
