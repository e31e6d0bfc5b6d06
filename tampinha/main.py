import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine

from .admin import router as admin_router
from .cache import CacheAdapter, MemoryCache, RedisCache
from .codec import CodeCodec
from .config import Settings, configure_logging
from .db import Base, make_engine, make_session_factory
from .errors import Rejection, StoreUnavailable
from .issuing import CodeIssuer
from .ledger import LedgerEngine
from .models import utcnow
from .redemption import RedemptionEngine
from .users import UserRegistry
from .validator import ScanValidator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    cache: CacheAdapter
    validator: ScanValidator
    ledger: LedgerEngine
    redemption: RedemptionEngine
    issuer: CodeIssuer
    users: UserRegistry


def build_services(
    settings: Settings,
    cache: Optional[CacheAdapter] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    engine = make_engine(settings.database_url)
    # Create DB tables; schema migrations are handled outside this service
    Base.metadata.create_all(bind=engine)
    session_factory = make_session_factory(engine)

    if cache is None:
        if settings.redis_url:
            cache = RedisCache.from_url(settings.redis_url)
        else:
            logger.warning("REDIS_URL not set, using the in-process cache")
            cache = MemoryCache()

    codec = CodeCodec(settings.code_secret)
    return Services(
        settings=settings,
        engine=engine,
        cache=cache,
        validator=ScanValidator(settings, codec, cache, session_factory, clock=clock),
        ledger=LedgerEngine(settings, cache, session_factory, clock=clock),
        redemption=RedemptionEngine(settings, cache, session_factory, clock=clock),
        issuer=CodeIssuer(settings, codec, cache, session_factory, clock=clock),
        users=UserRegistry(session_factory),
    )


def _rejected(rejection: Rejection, **extra) -> dict:
    return {"status": "REJECTED", "reason_code": rejection.reason.value, **extra}


class ScanReq(BaseModel):
    qr_code: str
    user_id: str


class RewardReq(BaseModel):
    reward_code: str


class RedeemReq(BaseModel):
    reward_code: str
    venue_name: str = Field(min_length=2, max_length=100)
    venue_id: str = Field(min_length=2, max_length=50)


class UserReq(BaseModel):
    platform: str
    platform_user_id: str
    name: Optional[str] = None
    username: Optional[str] = None


def create_app(
    settings: Optional[Settings] = None,
    cache: Optional[CacheAdapter] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)
    services = build_services(settings, cache=cache, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await services.cache.close()
        services.engine.dispose()

    app = FastAPI(title="Tampinha Points Ledger", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.include_router(admin_router)

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable):
        return JSONResponse(status_code=503, content={"status": "ERROR", "reason_code": "STORE_UNAVAILABLE"})

    # -------------------------
    # Scans
    # -------------------------
    @app.post("/scan")
    async def scan(req: ScanReq):
        meta = await services.validator.resolve(req.qr_code)
        if isinstance(meta, Rejection):
            return _rejected(meta)

        result = await services.ledger.record_scan(meta, req.user_id)
        if isinstance(result, Rejection):
            return _rejected(result, code_id=meta.code_id)

        return {
            "status": "ACCEPTED",
            "reason_code": "OK",
            "code_id": meta.code_id,
            "venue_name": result.venue_name,
            "points_earned": result.points_earned,
            "current_points": result.balance,
            "total_scans": result.total_scans,
            "reward_code": result.reward_code,
        }

    # -------------------------
    # Rewards
    # -------------------------
    @app.post("/rewards/validate")
    async def validate_reward(req: RewardReq):
        check = await services.redemption.validate(req.reward_code)
        if isinstance(check, Rejection):
            return _rejected(check)
        return {
            "status": "ACCEPTED",
            "reason_code": "OK",
            "valid": check.valid,
            "owner": check.owner,
            "expires_at": check.expires_at.isoformat(),
        }

    @app.post("/rewards/redeem")
    async def redeem_reward(req: RedeemReq):
        record = await services.redemption.redeem(req.reward_code, req.venue_name, req.venue_id)
        if isinstance(record, Rejection):
            return _rejected(record)
        return {
            "status": "ACCEPTED",
            "reason_code": "OK",
            "reward_code": record.reward_code,
            "redeemed": record.redeemed,
            "redeemed_at": record.redeemed_at.isoformat(),
            "venue_name": record.venue_name,
            "venue_id": record.venue_id,
        }

    # -------------------------
    # Users
    # -------------------------
    @app.post("/users")
    async def find_or_create_user(req: UserReq):
        user = await services.users.find_or_create_user(req.platform, req.platform_user_id, req.name, req.username)
        return {"user_id": user.id, "platform": user.platform, "platform_user_id": user.platform_user_id}

    async def _require_user(user_id: str):
        user = await services.users.get_user(user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found")
        return user

    @app.get("/users/{user_id}")
    async def get_user(user_id: str):
        user = await _require_user(user_id)
        return {
            "user_id": user.id,
            "platform": user.platform,
            "platform_user_id": user.platform_user_id,
            "name": user.name,
            "username": user.username,
            "points": user.points,
            "total_scans": user.total_scans,
            "is_active": user.is_active,
            "created_at": user.created_at.isoformat(),
        }

    @app.get("/users/{user_id}/stats")
    async def user_stats(user_id: str):
        stats = await services.ledger.user_stats(user_id)
        if stats is None:
            raise HTTPException(status_code=404, detail="User not found")
        return asdict(stats)

    @app.get("/users/{user_id}/scans")
    async def scan_history(user_id: str, limit: int = 50, offset: int = 0):
        await _require_user(user_id)
        entries = await services.ledger.scan_history(user_id, limit=min(limit, 200), offset=offset)
        return [
            {
                "code_id": e.code_id,
                "venue_name": e.venue_name,
                "venue_id": e.venue_id,
                "points_earned": e.points_earned,
                "scanned_at": e.scanned_at.isoformat(),
            }
            for e in entries
        ]

    @app.get("/users/{user_id}/rewards")
    async def user_rewards(user_id: str, include_redeemed: bool = False):
        await _require_user(user_id)
        rewards = await services.ledger.list_rewards(user_id, include_redeemed=include_redeemed)
        return [
            {
                "reward_code": r.reward_code,
                "points_used": r.points_used,
                "is_redeemed": r.is_redeemed,
                "expires_at": r.expires_at.isoformat(),
                "redeemed_at": r.redeemed_at.isoformat() if r.redeemed_at else None,
                "venue_name": r.venue_name,
            }
            for r in rewards
        ]

    return app
