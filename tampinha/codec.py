"""Opaque QR tokens.

A token is a compact JWE (direct key agreement, AES-256-GCM) over a small JSON
record. The key is derived from the process secret, so a token only decodes
under the secret that produced it and any tampering fails authentication.
Activity and expiry are deliberately not carried in the token: they live in
the store so a printed code can be revoked without reprinting it.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime

from jose import jwe
from jose.constants import ALGORITHMS
from jose.exceptions import JOSEError

from .errors import DecodeError


@dataclass(frozen=True)
class CodeRecord:
    code_id: str
    venue_id: str
    issued_at: datetime
    points_value: int


class CodeCodec:
    def __init__(self, secret: str):
        if not secret:
            raise ValueError("codec secret must not be empty")
        self._key = hashlib.sha256(secret.encode("utf-8")).digest()

    def encode(self, record: CodeRecord) -> str:
        payload = {
            "id": record.code_id,
            "venue_id": record.venue_id,
            "ts": record.issued_at.isoformat(),
            "points": record.points_value,
        }
        token = jwe.encrypt(
            json.dumps(payload, separators=(",", ":")).encode("utf-8"),
            self._key,
            algorithm=ALGORITHMS.DIR,
            encryption=ALGORITHMS.A256GCM,
        )
        return token.decode("ascii")

    def decode(self, token: str) -> CodeRecord:
        try:
            raw = jwe.decrypt(token, self._key)
            if raw is None:
                raise DecodeError("INVALID_TOKEN")
            payload = json.loads(raw.decode("utf-8"))
        except DecodeError:
            raise
        except (JOSEError, ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
            raise DecodeError("INVALID_TOKEN") from e

        if not isinstance(payload, dict):
            raise DecodeError("INVALID_TOKEN")

        # Required claims
        for k, kind in (("id", str), ("venue_id", str), ("ts", str), ("points", int)):
            if not isinstance(payload.get(k), kind) or isinstance(payload.get(k), bool):
                raise DecodeError("INVALID_TOKEN")
        if payload["points"] < 1:
            raise DecodeError("INVALID_TOKEN")

        try:
            issued_at = datetime.fromisoformat(payload["ts"])
        except ValueError as e:
            raise DecodeError("INVALID_TOKEN") from e

        return CodeRecord(
            code_id=payload["id"],
            venue_id=payload["venue_id"],
            issued_at=issued_at,
            points_value=payload["points"],
        )
