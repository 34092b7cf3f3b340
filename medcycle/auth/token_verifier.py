# medcycle/auth/token_verifier.py
from typing import Optional

import jwt

from medcycle.config.settings import settings


def verify_access_token(token: str) -> Optional[dict]:
    """
    Access token check:
    - signature with the shared secret (HS256 by default) / exp
    - audience only when JWT_AUDIENCE is configured
    - `sub` must be present; it is the caller's patient id
    Returns the payload, or None for any invalid token.
    """
    options = {"require": ["sub"]}
    if not settings.jwt_audience:
        options["verify_aud"] = False
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except jwt.PyJWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload
