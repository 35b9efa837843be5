import hmac
import hashlib
import json
from typing import Any, Mapping, Optional
from fastapi import HTTPException, Header
from payment_api.config import settings


SIGNATURE_HEADER = "x-payment-signature"
MANIFEST_SIGNATURE_HEADER = "x-signature"
REQUEST_ID_HEADER = "x-request-id"


def canonical_json(body: Any) -> str:
    """
    Compact JSON in key insertion order; the byte layout clients sign.
    """
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def compute_signature(payload: bytes | str, secret: str) -> str:
    if isinstance(payload, str):
        payload = payload.encode()
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def verify_payload_signature(raw_payload: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
    """
    Check x-payment-signature against the HMAC-SHA256 of the exact body bytes.
    """
    provided = _lower_keys(headers).get(SIGNATURE_HEADER)
    if not provided or not secret:
        return False
    expected = compute_signature(raw_payload, secret)
    return hmac.compare_digest(expected.encode(), provided.encode())


def parse_signature_header(value: str) -> dict[str, str]:
    """
    Split ``ts=...,v1=...`` into a dict. Parts without ``=`` make the header invalid.
    """
    parts: dict[str, str] = {}
    for chunk in value.split(","):
        key, sep, item = chunk.partition("=")
        if not sep:
            raise ValueError(f"malformed signature part: {chunk!r}")
        parts[key.strip()] = item.strip()
    return parts


def build_manifest(data_id: str, request_id: str, timestamp: str) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{timestamp};"


def _notification_data_id(raw_payload: bytes) -> Optional[str]:
    try:
        body = json.loads(raw_payload)
    except ValueError:
        return None
    if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
        return None
    data_id = body["data"].get("id")
    if data_id is None or data_id == "":
        return None
    return str(data_id)


def verify_manifest_signature(raw_payload: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
    """
    Provider-style check: HMAC over ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;``
    compared with the ``v1`` value of the x-signature header.
    """
    normalized = _lower_keys(headers)
    signature = normalized.get(MANIFEST_SIGNATURE_HEADER)
    request_id = normalized.get(REQUEST_ID_HEADER)
    if not signature or not request_id or not secret:
        return False
    try:
        parts = parse_signature_header(signature)
    except ValueError:
        return False
    timestamp = parts.get("ts")
    provided = parts.get("v1")
    if not timestamp or not provided:
        return False
    data_id = _notification_data_id(raw_payload)
    if data_id is None:
        return False
    expected = compute_signature(build_manifest(data_id, request_id, timestamp), secret)
    return hmac.compare_digest(expected.encode(), provided.encode())


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency guarding the admin routes. With no BEARER_TOKEN configured they stay closed.
    """
    if not settings.bearer_token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token.encode(), settings.bearer_token.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
