import logging

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from app.config import jwt_secret

logger = logging.getLogger(__name__)


def verify_token(authorization: str = Header(None)):
    """Guard for the admin order API: ``Authorization: Bearer <HS256 JWT>``."""
    secret = jwt_secret()
    if not secret:
        logger.error("JWT_SECRET is not configured, refusing admin request")
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError(scheme)
        return jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
