"""Points ledger: the only writer of user balances, scans and rewards.

``record_scan`` runs one atomic unit against the store:

    code still active and unexpired -> insert scan -> balance += points -> [balance >= threshold:
        insert reward, balance -= threshold] -> commit

The (user, code) unique constraint on ``scans`` is what makes a second scan of
the same code fail, so two racing requests cannot both pass a pre-check.
Balance changes are single ``UPDATE ... RETURNING`` statements relative to the
stored value. The cache is only touched after commit.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .cache import CacheAdapter, bounded_ttl, reward_key
from .config import Settings
from .errors import Reason, Rejection, StoreUnavailable
from .models import Code, Reward, Scan, User, utcnow
from .validator import CodeMetadata

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedReward:
    reward_code: str
    user_id: str
    owner: str
    points_used: int
    expires_at: datetime

    def to_cache(self) -> Dict[str, Any]:
        return {
            "reward_code": self.reward_code,
            "user_id": self.user_id,
            "owner": self.owner,
            "points_used": self.points_used,
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "IssuedReward":
        return cls(
            reward_code=data["reward_code"],
            user_id=data["user_id"],
            owner=data["owner"],
            points_used=int(data["points_used"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


@dataclass(frozen=True)
class ScanResult:
    points_earned: int
    balance: int
    total_scans: int
    venue_name: str
    reward_code: Optional[str] = None


@dataclass(frozen=True)
class ScanEntry:
    code_id: str
    venue_name: str
    venue_id: str
    points_earned: int
    scanned_at: datetime


@dataclass(frozen=True)
class UserStats:
    points: int
    total_scans: int
    unique_codes_scanned: int
    total_points_earned: int
    active_rewards: int
    redeemed_rewards: int


@dataclass(frozen=True)
class VenueStats:
    venue_id: str
    total_codes: int
    active_codes: int
    total_scans: int
    unique_users: int
    points_distributed: int
    recent_scans: int


@dataclass(frozen=True)
class VenueScan:
    code_id: str
    user_id: str
    user_name: Optional[str]
    platform_user_id: str
    points_earned: int
    scanned_at: datetime


@dataclass(frozen=True)
class SystemStats:
    total_users: int
    active_users: int
    total_scans: int
    total_codes: int
    rewards_issued: int
    rewards_redeemed: int
    active_points: int


def generate_reward_code(settings: Settings) -> str:
    return "".join(secrets.choice(settings.reward_alphabet) for _ in range(settings.reward_code_length))


class LedgerEngine:
    def __init__(
        self,
        settings: Settings,
        cache: CacheAdapter,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utcnow,
        code_generator: Optional[Callable[[], str]] = None,
    ):
        self.settings = settings
        self.cache = cache
        self.session_factory = session_factory
        self.clock = clock
        self.code_generator = code_generator or (lambda: generate_reward_code(settings))

    # -------------------------
    # Scan
    # -------------------------
    async def record_scan(self, meta: CodeMetadata, user_id: str) -> Union[ScanResult, Rejection]:
        outcome = await asyncio.to_thread(self._commit_scan, meta, user_id)
        if isinstance(outcome, Rejection):
            return outcome

        result, reward = outcome
        if reward is not None:
            remaining = (reward.expires_at - self.clock()).total_seconds()
            await self.cache.set(
                reward_key(reward.reward_code),
                reward.to_cache(),
                bounded_ttl(remaining, self.settings.reward_cache_ttl_cap_seconds),
            )
        return result

    def _commit_scan(self, meta: CodeMetadata, user_id: str):
        now = self.clock()
        db = self.session_factory()
        try:
            # the store decides activity and expiry, whatever the cache said
            state = db.execute(
                select(Code.is_active, Code.expires_at).where(Code.id == meta.code_id).with_for_update(read=True)
            ).one_or_none()
            if state is None or not state.is_active:
                db.rollback()
                logger.info("scan rejected, code %s inactive", meta.code_id)
                return Rejection(Reason.INACTIVE)
            if state.expires_at is not None and now >= state.expires_at:
                db.rollback()
                return Rejection(Reason.EXPIRED)

            db.add(Scan(user_id=user_id, qr_code_id=meta.code_id, points_earned=meta.points_value, scanned_at=now))
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                return self._classify_conflict(db, user_id, meta.code_id)

            row = db.execute(
                update(User)
                .where(User.id == user_id, User.is_active.is_(True))
                .values(points=User.points + meta.points_value, total_scans=User.total_scans + 1)
                .returning(User.points, User.total_scans, User.platform_user_id)
                .execution_options(synchronize_session=False)
            ).one_or_none()
            if row is None:
                db.rollback()
                logger.info("scan rejected, user %s unknown or inactive", user_id)
                return Rejection(Reason.USER_NOT_FOUND)

            balance, total_scans, owner = row
            reward = None
            if balance >= self.settings.reward_threshold:
                reward = self._issue_reward(db, user_id, owner, now)
                balance = db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(points=User.points - self.settings.reward_threshold)
                    .returning(User.points)
                    .execution_options(synchronize_session=False)
                ).scalar_one()

            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("scan unit rolled back user=%s code=%s", user_id, meta.code_id)
            raise StoreUnavailable("scan could not be recorded") from e
        except StoreUnavailable:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "scan recorded user=%s code=%s points=%s balance=%s reward=%s",
            user_id, meta.code_id, meta.points_value, balance, reward.reward_code if reward else None,
        )
        result = ScanResult(
            points_earned=meta.points_value,
            balance=balance,
            total_scans=total_scans,
            venue_name=meta.venue_name,
            reward_code=reward.reward_code if reward else None,
        )
        return result, reward

    def _classify_conflict(self, db: Session, user_id: str, code_id: str) -> Rejection:
        exists = db.execute(
            select(Scan.id).where(Scan.user_id == user_id, Scan.qr_code_id == code_id)
        ).first()
        if exists:
            logger.info("code %s already scanned by user %s", code_id, user_id)
            return Rejection(Reason.ALREADY_SCANNED)
        # foreign key violation: the user row does not exist
        return Rejection(Reason.USER_NOT_FOUND)

    def _issue_reward(self, db: Session, user_id: str, owner: str, now: datetime) -> IssuedReward:
        expires_at = now + timedelta(days=self.settings.reward_validity_days)
        threshold = self.settings.reward_threshold

        for attempt in range(1, self.settings.reward_code_attempts + 1):
            code = self.code_generator()
            try:
                with db.begin_nested():
                    db.add(Reward(
                        user_id=user_id,
                        reward_code=code,
                        points_used=threshold,
                        expires_at=expires_at,
                        created_at=now,
                    ))
            except IntegrityError:
                logger.warning("reward code collision on attempt %s, regenerating", attempt)
                continue
            return IssuedReward(
                reward_code=code,
                user_id=user_id,
                owner=owner,
                points_used=threshold,
                expires_at=expires_at,
            )

        raise StoreUnavailable(f"no unique reward code after {self.settings.reward_code_attempts} attempts")

    # -------------------------
    # Read-only ledger queries
    # -------------------------
    def _read(self, fn):
        db = self.session_factory()
        try:
            return fn(db)
        except SQLAlchemyError as e:
            logger.exception("ledger read failed")
            raise StoreUnavailable("ledger read failed") from e
        finally:
            db.close()

    async def get_balance(self, user_id: str) -> Optional[Dict[str, int]]:
        def q(db: Session):
            row = db.execute(select(User.points, User.total_scans).where(User.id == user_id)).one_or_none()
            return {"points": row.points, "total_scans": row.total_scans} if row else None

        return await asyncio.to_thread(self._read, q)

    async def scan_history(self, user_id: str, limit: int = 50, offset: int = 0) -> List[ScanEntry]:
        def q(db: Session):
            rows = db.execute(
                select(Scan, Code.venue_name, Code.venue_id)
                .join(Code, Code.id == Scan.qr_code_id)
                .where(Scan.user_id == user_id)
                .order_by(Scan.scanned_at.desc(), Scan.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return [
                ScanEntry(
                    code_id=s.qr_code_id,
                    venue_name=venue_name,
                    venue_id=venue_id,
                    points_earned=s.points_earned,
                    scanned_at=s.scanned_at,
                )
                for s, venue_name, venue_id in rows
            ]

        return await asyncio.to_thread(self._read, q)

    async def list_rewards(self, user_id: str, include_redeemed: bool = False) -> List[Reward]:
        def q(db: Session):
            stmt = select(Reward).where(Reward.user_id == user_id)
            if not include_redeemed:
                stmt = stmt.where(Reward.is_redeemed.is_(False))
            return list(db.execute(stmt.order_by(Reward.created_at.desc(), Reward.id.desc())).scalars().all())

        return await asyncio.to_thread(self._read, q)

    async def user_stats(self, user_id: str) -> Optional[UserStats]:
        def q(db: Session):
            user = db.get(User, user_id)
            if user is None:
                return None
            unique_codes, earned = db.execute(
                select(func.count(func.distinct(Scan.qr_code_id)), func.coalesce(func.sum(Scan.points_earned), 0))
                .where(Scan.user_id == user_id)
            ).one()
            redeemed_counts = dict(
                db.execute(
                    select(Reward.is_redeemed, func.count(Reward.id))
                    .where(Reward.user_id == user_id)
                    .group_by(Reward.is_redeemed)
                ).all()
            )
            return UserStats(
                points=user.points,
                total_scans=user.total_scans,
                unique_codes_scanned=int(unique_codes),
                total_points_earned=int(earned),
                active_rewards=int(redeemed_counts.get(False, 0)),
                redeemed_rewards=int(redeemed_counts.get(True, 0)),
            )

        return await asyncio.to_thread(self._read, q)

    # -------------------------
    # Venue and system reporting (read only)
    # -------------------------
    async def venue_stats(self, venue_id: str, days: int = 30) -> Optional[VenueStats]:
        now = self.clock()
        since = now - timedelta(days=days)

        def q(db: Session):
            total_codes, active_codes = db.execute(
                select(
                    func.count(Code.id),
                    func.coalesce(func.sum(case(
                        (Code.is_active.is_(True) & or_(Code.expires_at.is_(None), Code.expires_at > now), 1),
                        else_=0,
                    )), 0),
                ).where(Code.venue_id == venue_id)
            ).one()
            if not total_codes:
                return None
            total_scans, unique_users, points, recent = db.execute(
                select(
                    func.count(Scan.id),
                    func.count(func.distinct(Scan.user_id)),
                    func.coalesce(func.sum(Scan.points_earned), 0),
                    func.coalesce(func.sum(case((Scan.scanned_at >= since, 1), else_=0)), 0),
                )
                .join(Code, Code.id == Scan.qr_code_id)
                .where(Code.venue_id == venue_id)
            ).one()
            return VenueStats(
                venue_id=venue_id,
                total_codes=int(total_codes),
                active_codes=int(active_codes),
                total_scans=int(total_scans),
                unique_users=int(unique_users),
                points_distributed=int(points),
                recent_scans=int(recent),
            )

        return await asyncio.to_thread(self._read, q)

    async def venue_scans(self, venue_id: str, limit: int = 50, offset: int = 0) -> Tuple[List[VenueScan], int]:
        """Most recent scans at a venue, newest first, with the total count."""

        def q(db: Session):
            rows = db.execute(
                select(Scan, User.name, User.platform_user_id)
                .join(Code, Code.id == Scan.qr_code_id)
                .join(User, User.id == Scan.user_id)
                .where(Code.venue_id == venue_id)
                .order_by(Scan.scanned_at.desc(), Scan.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            total = db.execute(
                select(func.count(Scan.id)).join(Code, Code.id == Scan.qr_code_id).where(Code.venue_id == venue_id)
            ).scalar_one()
            entries = [
                VenueScan(
                    code_id=s.qr_code_id,
                    user_id=s.user_id,
                    user_name=name,
                    platform_user_id=platform_user_id,
                    points_earned=s.points_earned,
                    scanned_at=s.scanned_at,
                )
                for s, name, platform_user_id in rows
            ]
            return entries, int(total)

        return await asyncio.to_thread(self._read, q)

    async def leaderboard(self, limit: int = 100) -> List[User]:
        def q(db: Session):
            stmt = (
                select(User)
                .where(User.is_active.is_(True))
                .order_by(User.points.desc(), User.total_scans.desc(), User.created_at)
                .limit(limit)
            )
            return list(db.execute(stmt).scalars().all())

        return await asyncio.to_thread(self._read, q)

    async def system_stats(self) -> SystemStats:
        def q(db: Session):
            total_users, active_users, active_points = db.execute(
                select(
                    func.count(User.id),
                    func.coalesce(func.sum(case((User.is_active.is_(True), 1), else_=0)), 0),
                    func.coalesce(func.sum(User.points), 0),
                )
            ).one()
            rewards_issued, rewards_redeemed = db.execute(
                select(
                    func.count(Reward.id),
                    func.coalesce(func.sum(case((Reward.is_redeemed.is_(True), 1), else_=0)), 0),
                )
            ).one()
            return SystemStats(
                total_users=int(total_users),
                active_users=int(active_users),
                total_scans=int(db.execute(select(func.count(Scan.id))).scalar_one()),
                total_codes=int(db.execute(select(func.count(Code.id))).scalar_one()),
                rewards_issued=int(rewards_issued),
                rewards_redeemed=int(rewards_redeemed),
                active_points=int(active_points),
            )

        return await asyncio.to_thread(self._read, q)

    async def all_rewards(self, status: str = "all", limit: int = 50, offset: int = 0) -> Tuple[List[Reward], int]:
        """Rewards across users; ``status`` is one of all, active, redeemed, expired."""
        now = self.clock()
        filters = {
            "all": [],
            "active": [Reward.is_redeemed.is_(False), Reward.expires_at > now],
            "redeemed": [Reward.is_redeemed.is_(True)],
            "expired": [Reward.is_redeemed.is_(False), Reward.expires_at <= now],
        }
        if status not in filters:
            raise ValueError(f"unknown reward status {status!r}")

        def q(db: Session):
            where = filters[status]
            rows = db.execute(
                select(Reward).where(*where).order_by(Reward.created_at.desc(), Reward.id.desc()).limit(limit).offset(offset)
            ).scalars().all()
            total = db.execute(select(func.count(Reward.id)).where(*where)).scalar_one()
            return list(rows), int(total)

        return await asyncio.to_thread(self._read, q)
