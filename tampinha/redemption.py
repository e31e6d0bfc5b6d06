"""Reward checks for venues and the one-time redemption flip.

Both operations collapse "never issued" and "already redeemed" into one
answer so a venue cannot tell which codes exist. The answer is named after
the operation: ``validate`` is a lookup and says there is no redeemable
reward under the code (``NOT_FOUND``); ``redeem`` is the state change and
says the code cannot be used (``ALREADY_REDEEMED``). An unredeemed code past
its expiry is ``EXPIRED`` in both.

After a redemption the cache entry is replaced by a tombstone rather than
deleted, and ``validate`` only refills absent keys, so a lookup that read
the row before the flip cannot put a valid-looking entry back.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .cache import CacheAdapter, bounded_ttl, is_tombstone, reward_key, tombstone
from .config import Settings
from .errors import Reason, Rejection, StoreUnavailable
from .ledger import IssuedReward
from .models import Reward, User, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedemptionRecord:
    reward_code: str
    user_id: str
    points_used: int
    redeemed: bool
    redeemed_at: datetime
    venue_name: str
    venue_id: str
    expires_at: datetime


@dataclass(frozen=True)
class RewardCheck:
    valid: bool
    user_id: str
    owner: str
    expires_at: datetime


class RedemptionEngine:
    """Venue-side reward checks and the one-time unredeemed -> redeemed flip."""

    def __init__(
        self,
        settings: Settings,
        cache: CacheAdapter,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.cache = cache
        self.session_factory = session_factory
        self.clock = clock
        self._pattern = re.compile(
            "^[%s]{%d}$" % (re.escape(settings.reward_alphabet), settings.reward_code_length)
        )

    def well_formed(self, reward_code: str) -> bool:
        return isinstance(reward_code, str) and bool(self._pattern.match(reward_code))

    # -------------------------
    # Pre-check (read only)
    # -------------------------
    async def validate(self, reward_code: str) -> Union[RewardCheck, Rejection]:
        if not self.well_formed(reward_code):
            return Rejection(Reason.MALFORMED)

        now = self.clock()
        data = await self.cache.get(reward_key(reward_code))
        if is_tombstone(data):
            return Rejection(Reason.NOT_FOUND)

        entry = self._from_cache(reward_code, data)
        if entry is None:
            entry = await asyncio.to_thread(self._load_unredeemed, reward_code)
            if entry is None:
                return Rejection(Reason.NOT_FOUND)
            if now < entry.expires_at:
                remaining = (entry.expires_at - now).total_seconds()
                # never overwrites a redemption tombstone written after our read
                await self.cache.add(
                    reward_key(reward_code),
                    entry.to_cache(),
                    bounded_ttl(remaining, self.settings.reward_cache_ttl_cap_seconds),
                )

        if now >= entry.expires_at:
            return Rejection(Reason.EXPIRED)

        return RewardCheck(valid=True, user_id=entry.user_id, owner=entry.owner, expires_at=entry.expires_at)

    def _from_cache(self, reward_code: str, data) -> Optional[IssuedReward]:
        if data is None:
            return None
        try:
            return IssuedReward.from_cache(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("ignoring malformed cache entry for reward %s", reward_code)
            return None

    def _load_unredeemed(self, reward_code: str) -> Optional[IssuedReward]:
        db = self.session_factory()
        try:
            row = db.execute(
                select(Reward, User.platform_user_id)
                .join(User, User.id == Reward.user_id)
                .where(Reward.reward_code == reward_code, Reward.is_redeemed.is_(False))
            ).one_or_none()
        except SQLAlchemyError as e:
            logger.exception("reward lookup failed")
            raise StoreUnavailable("reward lookup failed") from e
        finally:
            db.close()

        if row is None:
            return None
        reward, owner = row
        return IssuedReward(
            reward_code=reward.reward_code,
            user_id=reward.user_id,
            owner=owner,
            points_used=reward.points_used,
            expires_at=reward.expires_at,
        )

    # -------------------------
    # Redeem
    # -------------------------
    async def redeem(self, reward_code: str, venue_name: str, venue_id: str) -> Union[RedemptionRecord, Rejection]:
        if not self.well_formed(reward_code):
            return Rejection(Reason.MALFORMED)

        outcome = await asyncio.to_thread(self._flip, reward_code, venue_name, venue_id)
        if isinstance(outcome, RedemptionRecord):
            await self.cache.set(
                reward_key(reward_code),
                tombstone("redeemed"),
                bounded_ttl(
                    (outcome.expires_at - outcome.redeemed_at).total_seconds(),
                    self.settings.reward_cache_ttl_cap_seconds,
                ),
            )
        return outcome

    def _flip(self, reward_code: str, venue_name: str, venue_id: str) -> Union[RedemptionRecord, Rejection]:
        now = self.clock()
        db = self.session_factory()
        try:
            row = db.execute(
                update(Reward)
                .where(
                    Reward.reward_code == reward_code,
                    Reward.is_redeemed.is_(False),
                    Reward.expires_at > now,
                )
                .values(is_redeemed=True, redeemed_at=now, venue_name=venue_name, venue_id=venue_id)
                .returning(Reward.user_id, Reward.points_used, Reward.expires_at)
                .execution_options(synchronize_session=False)
            ).one_or_none()

            if row is None:
                expired = db.execute(
                    select(Reward.id).where(
                        Reward.reward_code == reward_code,
                        Reward.is_redeemed.is_(False),
                        Reward.expires_at <= now,
                    )
                ).first()
                db.rollback()
                if expired:
                    logger.info("reward %s expired before redemption", reward_code)
                    return Rejection(Reason.EXPIRED)
                # unknown and already-redeemed codes are reported the same way
                logger.info("reward %s not redeemable", reward_code)
                return Rejection(Reason.ALREADY_REDEEMED)

            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("redemption rolled back for reward %s", reward_code)
            raise StoreUnavailable("redemption failed") from e
        finally:
            db.close()

        user_id, points_used, expires_at = row
        logger.info("reward %s redeemed at venue %s", reward_code, venue_id)
        return RedemptionRecord(
            reward_code=reward_code,
            user_id=user_id,
            points_used=points_used,
            redeemed=True,
            redeemed_at=now,
            venue_name=venue_name,
            venue_id=venue_id,
            expires_at=expires_at,
        )
