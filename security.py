import secrets
import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer

from config import get_settings

COOKIE_NAME = "finance_client"


def _serializer(salt: str) -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.secret_key, salt=salt)


def new_client_id() -> str:
    return secrets.token_urlsafe(16)


def dump_client_cookie(client_id: str, storage: dict[str, str]) -> str:
    return _serializer("client-cookie").dumps({"cid": client_id, "storage": storage})


def load_client_cookie(value: Optional[str]) -> tuple[Optional[str], dict[str, str]]:
    if not value:
        return None, {}
    try:
        data = _serializer("client-cookie").loads(value)
    except BadSignature:
        return None, {}
    storage = data.get("storage") or {}
    return data.get("cid"), {str(k): str(v) for k, v in storage.items()}


def generate_csrf_token(client_id: str, max_age_hours: int = 2) -> str:
    serializer = _serializer("csrf-token")
    timestamp = int(time.time())
    expiry = timestamp + (max_age_hours * 3600)

    token_data = {"c": client_id, "ts": timestamp, "exp": expiry}

    return serializer.dumps(token_data)


def validate_csrf_token(token: str, client_id: str) -> bool:
    serializer = _serializer("csrf-token")
    try:
        data = serializer.loads(token)
    except BadSignature:
        return False

    if data.get("c") != client_id:
        return False

    current_time = int(time.time())
    expiry_time = data.get("exp", 0)

    if current_time > expiry_time:
        return False

    return True
