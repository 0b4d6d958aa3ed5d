from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

FORM_TOKEN_MAX_AGE_SECS = 2 * 3600


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().csrf_secret, salt="bucket-forms")


def generate_csrf_token() -> str:
    return _serializer().dumps({"purpose": "form"})


def validate_csrf_token(
    token: Optional[str], max_age: int = FORM_TOKEN_MAX_AGE_SECS
) -> bool:
    if not token:
        return False
    try:
        _serializer().loads(token, max_age=max_age)
    except BadSignature:
        return False
    return True
