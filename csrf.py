from typing import Optional

from fastapi import Header, HTTPException
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

TOKEN_MAX_AGE_SECS = 2 * 3600


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="ledger-csrf")


def generate_csrf_token(user_id: int = 1) -> str:
    return _serializer().dumps({"u": user_id})


def validate_csrf_token(token: str, user_id: int = 1) -> bool:
    try:
        data = _serializer().loads(token, max_age=TOKEN_MAX_AGE_SECS)
    except BadSignature:
        return False
    return isinstance(data, dict) and data.get("u") == user_id


def require_csrf_token(
    x_csrf_token: Optional[str] = Header(default=None),
) -> None:
    if not x_csrf_token or not validate_csrf_token(x_csrf_token):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
