import secrets

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatrecall.server.runtime import get_runtime

security = HTTPBearer(auto_error=False)


async def require_api_key(credentials: HTTPAuthorizationCredentials | None = Depends(security)) -> None:
    expected = get_runtime().config.api_key
    if not expected:
        return
    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
