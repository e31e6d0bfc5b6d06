import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .cache import CacheAdapter, code_key, tombstone
from .codec import CodeCodec, CodeRecord
from .config import Settings
from .errors import StoreUnavailable
from .models import Code, utcnow
from .validator import CodeMetadata, cache_code

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedCode:
    metadata: CodeMetadata
    token: str
    payload: str  # what gets printed into the QR image
    created_at: datetime


class CodeIssuer:
    """Venue tooling: print new codes, list them, take them out of circulation."""

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

    async def issue_code(
        self,
        venue_name: str,
        venue_id: str,
        points_value: int = 1,
        expiry_hours: Optional[int] = None,
        never_expires: bool = False,
    ) -> IssuedCode:
        s = self.settings
        if not s.min_points_value <= points_value <= s.max_points_value:
            raise ValueError(f"points_value must be between {s.min_points_value} and {s.max_points_value}")
        if not venue_name or not venue_id:
            raise ValueError("venue_name and venue_id are required")

        now = self.clock()
        expires_at = None
        if not never_expires:
            hours = s.default_expiry_hours if expiry_hours is None else expiry_hours
            if not 1 <= hours <= s.max_expiry_hours:
                raise ValueError(f"expiry_hours must be between 1 and {s.max_expiry_hours}")
            expires_at = now + timedelta(hours=hours)

        record = CodeRecord(code_id=str(uuid.uuid4()), venue_id=venue_id, issued_at=now, points_value=points_value)
        token = self.codec.encode(record)
        meta = CodeMetadata(
            code_id=record.code_id,
            venue_name=venue_name,
            venue_id=venue_id,
            points_value=points_value,
            expires_at=expires_at,
        )

        await asyncio.to_thread(self._insert, meta, token, now)
        await cache_code(self.cache, meta, s, now)
        logger.info("issued code %s for venue %s (%s pts)", meta.code_id, venue_id, points_value)
        return IssuedCode(metadata=meta, token=token, payload=s.code_scheme + token, created_at=now)

    def _insert(self, meta: CodeMetadata, token: str, now: datetime) -> None:
        db = self.session_factory()
        try:
            db.add(Code(
                id=meta.code_id,
                code=token,
                venue_name=meta.venue_name,
                venue_id=meta.venue_id,
                points_value=meta.points_value,
                is_active=True,
                expires_at=meta.expires_at,
                created_at=now,
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("code insert failed")
            raise StoreUnavailable("code could not be issued") from e
        finally:
            db.close()

    async def deactivate_code(self, code_id: str) -> bool:
        changed = await asyncio.to_thread(self._deactivate, code_id)
        # overwrite the cached copy so concurrent store reads cannot refill it
        await self.cache.set(code_key(code_id), tombstone("inactive"), self.settings.code_cache_ttl_cap_seconds)
        if changed:
            logger.info("deactivated code %s", code_id)
        return changed

    def _deactivate(self, code_id: str) -> bool:
        db = self.session_factory()
        try:
            result = db.execute(
                update(Code)
                .where(Code.id == code_id, Code.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("code deactivation failed")
            raise StoreUnavailable("code could not be deactivated") from e
        finally:
            db.close()

    async def list_codes(self, venue_id: str, active_only: bool = True, limit: int = 20, offset: int = 0) -> List[Code]:
        now = self.clock()

        def q():
            db = self.session_factory()
            try:
                stmt = select(Code).where(Code.venue_id == venue_id)
                if active_only:
                    stmt = stmt.where(Code.is_active.is_(True), or_(Code.expires_at.is_(None), Code.expires_at > now))
                stmt = stmt.order_by(Code.created_at.desc()).limit(limit).offset(offset)
                return list(db.execute(stmt).scalars().all())
            except SQLAlchemyError as e:
                logger.exception("code listing failed")
                raise StoreUnavailable("codes could not be listed") from e
            finally:
                db.close()

        return await asyncio.to_thread(q)
