import hmac
from fastapi import HTTPException, Header
from rewardhub.config import settings

UNAUTHORIZED_HEADERS = {"WWW-Authenticate": "Bearer"}


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    Guard for the admin routes. Open when no bearer token is configured.
    """
    if not settings.bearer_token:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="missing bearer token", headers=UNAUTHORIZED_HEADERS)
    if not hmac.compare_digest(token.strip(), settings.bearer_token):
        raise HTTPException(status_code=401, detail="invalid bearer token", headers=UNAUTHORIZED_HEADERS)
