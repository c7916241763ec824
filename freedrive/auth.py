from dataclasses import dataclass

from jose import JWTError, jwt

from freedrive.config import Settings


class TokenError(Exception):
    pass


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str


def decode_token(token: str, settings: Settings) -> CurrentUser:
    """Verify an access token issued by the auth provider and pull out the user."""
    if not settings.jwt_secret:
        raise TokenError("Token verification is not configured")
    options = {"verify_aud": settings.jwt_audience is not None}
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except JWTError as e:
        raise TokenError(str(e)) from e

    user_id = payload.get("sub")
    if not user_id:
        raise TokenError("Token has no subject")
    return CurrentUser(id=user_id, email=payload.get("email") or "")
