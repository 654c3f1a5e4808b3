from typing import Optional

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import ConfigurationError, get_settings


class TokenExpired(Exception):
    pass


class TokenInvalid(Exception):
    pass


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    if not settings.token_secret:
        raise ConfigurationError("Missing required configuration: FINTRACK_TOKEN_SECRET")
    return URLSafeTimedSerializer(settings.token_secret, salt="access-token")


def _password_bytes(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes.
    return password.encode("utf-8")[:72]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
    except ValueError:
        return False


def issue_token(user_id: int, email: str) -> str:
    return _serializer().dumps({"uid": user_id, "email": email})


def read_token(token: str, max_age: Optional[int] = None) -> int:
    """Return the user id carried by `token`.

    With `max_age=None` only the signature is checked, which is what the
    refresh flow relies on to re-issue expired tokens.
    """
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired as exc:
        raise TokenExpired("Token expired") from exc
    except BadSignature as exc:
        raise TokenInvalid("Invalid token") from exc

    user_id = data.get("uid") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise TokenInvalid("Invalid token")
    return user_id


def verify_token(token: str) -> int:
    return read_token(token, max_age=get_settings().token_max_age_secs)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
