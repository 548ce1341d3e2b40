"""Opaque keyset cursors over ``(created_at, id)``.

A cursor is ``<payload>.<signature>``: the urlsafe-base64 JSON pair
``{"createdAt": ..., "id": ...}`` followed by a truncated HMAC-SHA256 of the
payload. Any edit to either half, or any malformed token, is rejected with
``InvalidCursor`` instead of silently selecting a different page.
"""

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime

from .errors import InvalidCursor
from .models import as_utc

_SIGNATURE_BYTES = 16


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


class PaginationCodec:
    def __init__(self, secret: str):
        self._key = secret.encode("utf-8")

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self._key, payload, hashlib.sha256).digest()[:_SIGNATURE_BYTES]

    def encode(self, created_at: datetime, order_id: str) -> str:
        payload = json.dumps(
            {"createdAt": as_utc(created_at).isoformat(), "id": order_id},
            separators=(",", ":"),
        ).encode("utf-8")
        return f"{_b64encode(payload)}.{_b64encode(self._sign(payload))}"

    def decode(self, cursor: str) -> tuple[datetime, str]:
        try:
            encoded_payload, encoded_signature = cursor.split(".")
            payload = _b64decode(encoded_payload)
            signature = _b64decode(encoded_signature)
        except (ValueError, UnicodeEncodeError, binascii.Error):
            raise InvalidCursor("malformed encoding") from None

        if not hmac.compare_digest(signature, self._sign(payload)):
            raise InvalidCursor("signature mismatch")

        try:
            decoded = json.loads(payload.decode("utf-8"))
        except ValueError:
            raise InvalidCursor("malformed payload") from None
        if not isinstance(decoded, dict) or set(decoded) != {"createdAt", "id"}:
            raise InvalidCursor("unexpected payload shape")

        created_at, order_id = decoded["createdAt"], decoded["id"]
        if not isinstance(created_at, str) or not isinstance(order_id, str) or not order_id:
            raise InvalidCursor("unexpected payload shape")
        try:
            parsed = datetime.fromisoformat(created_at)
        except ValueError:
            raise InvalidCursor("malformed timestamp") from None
        if parsed.tzinfo is None:
            raise InvalidCursor("timestamp without timezone")
        return parsed, order_id
