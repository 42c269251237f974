import os
import time

import jwt


JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ISSUER = os.getenv("JWT_ISSUER", "versebook")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "versebook")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_ACCESS_TTL_SEC = int(os.getenv("JWT_ACCESS_TTL_SEC", "3600"))


def _now_ts() -> int:
    return int(time.time())


def create_access_token(user_id: str, email: str | None = None) -> tuple[str, int]:
    now = _now_ts()
    exp = now + JWT_ACCESS_TTL_SEC
    payload = {
        "sub": user_id,
        "email": email,
        "typ": "access",
        "iat": now,
        "exp": exp,
        "iss": JWT_ISSUER,
        "aud": JWT_AUDIENCE,
    }
    token = jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)
    return token, exp


def verify_access_token(token: str) -> dict | None:
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            issuer=JWT_ISSUER,
            audience=JWT_AUDIENCE,
        )
    except jwt.PyJWTError:
        return None
    if payload.get("typ") != "access":
        return None
    return payload
