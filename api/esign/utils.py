import base64, hashlib, hmac, json, re
from datetime import datetime, timedelta, timezone
from itsdangerous import URLSafeSerializer

_PLACEHOLDER = re.compile(r"{{\s*([\w.-]+)\s*}}")


def utcnow() -> datetime:
    # naive UTC, matching what the database hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)

def b64png_to_bytes(data_url: str) -> bytes:
    # expects "data:image/png;base64,....." or the bare base64 body
    if "," in data_url:
        data_url = data_url.split(",", 1)[1]
    return base64.b64decode(data_url)

def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()

def hmac_sha256(secret: str, message: str) -> str:
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()

def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)

def make_token(payload: dict, secret_key: str) -> str:
    s = URLSafeSerializer(secret_key, salt="signing")
    return s.dumps(payload)

def read_token(token: str, secret_key: str) -> dict:
    s = URLSafeSerializer(secret_key, salt="signing")
    return s.loads(token)

def expiry_from(value: float, unit: str, now: datetime | None = None) -> datetime:
    now = now or utcnow()
    if unit == "hours":
        return now + timedelta(hours=value)
    if unit == "days":
        return now + timedelta(days=value)
    if unit == "weeks":
        return now + timedelta(weeks=value)
    raise ValueError(f"invalid time unit: {unit}")

def merge_placeholders(html: str, values: dict) -> str:
    def _sub(match):
        value = values.get(match.group(1))
        return "" if value is None else str(value)
    return _PLACEHOLDER.sub(_sub, html or "")
