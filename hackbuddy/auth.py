from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt

from hackbuddy import config
from hackbuddy.errors import AuthenticationError
from hackbuddy.models import Identity, Session


def verify_token(token: str) -> Dict[str, Any]:
    """Verify a Supabase access token and return its claims"""
    try:
        payload = jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.ALGORITHM],
            audience=config.JWT_AUDIENCE,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")
    if payload.get("sub") is None:
        raise AuthenticationError("Invalid token")
    return payload


def session_from_token(token: Optional[str]) -> Optional[Session]:
    if not token:
        return None
    claims = verify_token(token)
    expires_at = None
    if claims.get("exp"):
        expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
    return Session(
        access_token=token,
        identity=Identity.from_claims(claims),
        expires_at=expires_at,
    )
