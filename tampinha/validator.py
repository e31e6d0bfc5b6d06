import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .cache import CacheAdapter, bounded_ttl, code_key, is_tombstone
from .codec import CodeCodec
from .config import Settings
from .errors import DecodeError, Reason, Rejection, StoreUnavailable
from .models import Code, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CodeMetadata:
    code_id: str
    venue_name: str
    venue_id: str
    points_value: int
    expires_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: Code) -> "CodeMetadata":
        return cls(
            code_id=row.id,
            venue_name=row.venue_name,
            venue_id=row.venue_id,
            points_value=row.points_value,
            expires_at=row.expires_at,
        )

    def to_cache(self) -> Dict[str, Any]:
        return {
            "id": self.code_id,
            "venue_name": self.venue_name,
            "venue_id": self.venue_id,
            "points_value": self.points_value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "CodeMetadata":
        expires = data.get("expires_at")
        return cls(
            code_id=data["id"],
            venue_name=data["venue_name"],
            venue_id=data["venue_id"],
            points_value=int(data["points_value"]),
            expires_at=datetime.fromisoformat(expires) if expires else None,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


async def cache_code(
    cache: CacheAdapter, meta: CodeMetadata, settings: Settings, now: datetime, refill: bool = False
) -> None:
    remaining = (meta.expires_at - now).total_seconds() if meta.expires_at else None
    ttl = bounded_ttl(remaining, settings.code_cache_ttl_cap_seconds)
    if refill:
        # a deactivation tombstone written since our store read must win
        await cache.add(code_key(meta.code_id), meta.to_cache(), ttl)
        return
    await cache.set(code_key(meta.code_id), meta.to_cache(), ttl)


class ScanValidator:
    """Read path for presented QR payloads: decode, resolve, check expiry."""

    def __init__(
        self,
        settings: Settings,
        codec: CodeCodec,
        cache: CacheAdapter,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.codec = codec
        self.cache = cache
        self.session_factory = session_factory
        self.clock = clock

    async def resolve(self, presented: str) -> Union[CodeMetadata, Rejection]:
        scheme = self.settings.code_scheme
        if not isinstance(presented, str) or not presented.startswith(scheme):
            return Rejection(Reason.MALFORMED, "missing scheme prefix")

        try:
            record = self.codec.decode(presented[len(scheme):])
        except DecodeError:
            logger.info("rejected undecodable code token")
            return Rejection(Reason.MALFORMED, "undecodable token")

        data = await self.cache.get(code_key(record.code_id))
        if is_tombstone(data):
            logger.info("code %s deactivated", record.code_id)
            return Rejection(Reason.INACTIVE)

        meta = self._from_cache(record.code_id, data)
        from_cache = meta is not None
        if meta is None:
            meta = await asyncio.to_thread(self._load_active, record.code_id)
        if meta is None:
            logger.info("code %s not found or inactive", record.code_id)
            return Rejection(Reason.INACTIVE)

        if meta.venue_id != record.venue_id:
            logger.warning("code %s venue mismatch between token and record", record.code_id)
            return Rejection(Reason.MALFORMED, "venue mismatch")

        now = self.clock()
        if meta.is_expired(now):
            return Rejection(Reason.EXPIRED)

        if not from_cache:
            await cache_code(self.cache, meta, self.settings, now, refill=True)
        return meta

    def _from_cache(self, code_id: str, data) -> Optional[CodeMetadata]:
        if data is None:
            return None
        try:
            return CodeMetadata.from_cache(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("ignoring malformed cache entry for code %s", code_id)
            return None

    def _load_active(self, code_id: str) -> Optional[CodeMetadata]:
        db = self.session_factory()
        try:
            row = db.execute(
                select(Code).where(Code.id == code_id, Code.is_active.is_(True))
            ).scalar_one_or_none()
            return CodeMetadata.from_row(row) if row else None
        except SQLAlchemyError as e:
            logger.exception("code lookup failed")
            raise StoreUnavailable("code lookup failed") from e
        finally:
            db.close()
