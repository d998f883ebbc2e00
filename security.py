from dataclasses import dataclass
from typing import Optional

import bcrypt
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

MAX_PASSWORD_BYTES = 72


@dataclass(frozen=True)
class Identity:
    user_id: str
    name: str


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="access-token")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(
            password.encode("utf-8"), hashed_password.encode("utf-8")
        )
    except ValueError:
        return False


def generate_token(identity: Identity) -> str:
    return _serializer().dumps({"uid": identity.user_id, "name": identity.name})


def read_token(token: str, max_age_secs: Optional[int] = None) -> Optional[Identity]:
    if max_age_secs is None:
        max_age_secs = get_settings().token_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age_secs)
    except BadSignature:
        return None

    if not isinstance(data, dict):
        return None
    user_id = data.get("uid")
    name = data.get("name")
    if not user_id or not name:
        return None
    return Identity(user_id=str(user_id), name=str(name))
