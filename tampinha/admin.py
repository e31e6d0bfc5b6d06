from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

router = APIRouter(prefix="/admin", tags=["admin"])


def _code_out(meta, created_at=None) -> dict:
    return {
        "code_id": meta.code_id,
        "venue_name": meta.venue_name,
        "venue_id": meta.venue_id,
        "points_value": meta.points_value,
        "expires_at": meta.expires_at.isoformat() if meta.expires_at else None,
        "created_at": created_at.isoformat() if created_at else None,
    }


# -------------------------
# Code issuing
# -------------------------
class IssueCodeReq(BaseModel):
    venue_name: str = Field(min_length=2, max_length=100)
    venue_id: str = Field(min_length=2, max_length=50)
    points_value: int = 1
    expiry_hours: Optional[int] = None
    never_expires: bool = False


@router.post("/codes")
async def issue_code(req: IssueCodeReq, request: Request):
    issuer = request.app.state.services.issuer
    try:
        issued = await issuer.issue_code(
            req.venue_name,
            req.venue_id,
            points_value=req.points_value,
            expiry_hours=req.expiry_hours,
            never_expires=req.never_expires,
        )
    except ValueError as e:
        return {"ok": False, "error": str(e)}

    return {
        "ok": True,
        "code": _code_out(issued.metadata, issued.created_at),
        "qr_payload": issued.payload,
    }


@router.get("/venues/{venue_id}/codes")
async def list_codes(venue_id: str, request: Request, active_only: bool = True, limit: int = 20, offset: int = 0):
    rows = await request.app.state.services.issuer.list_codes(
        venue_id, active_only=active_only, limit=min(limit, 500), offset=offset
    )
    return [
        {
            "code_id": c.id,
            "venue_name": c.venue_name,
            "venue_id": c.venue_id,
            "points_value": c.points_value,
            "is_active": c.is_active,
            "expires_at": c.expires_at.isoformat() if c.expires_at else None,
            "created_at": c.created_at.isoformat() if c.created_at else None,
        }
        for c in rows
    ]


@router.patch("/codes/{code_id}/deactivate")
async def deactivate_code(code_id: str, request: Request):
    if not await request.app.state.services.issuer.deactivate_code(code_id):
        raise HTTPException(status_code=404, detail="QR code not found or already inactive")
    return {"ok": True, "code_id": code_id}


@router.patch("/users/{user_id}/deactivate")
async def deactivate_user(user_id: str, request: Request):
    if not await request.app.state.services.users.deactivate_user(user_id):
        raise HTTPException(status_code=404, detail="User not found or already inactive")
    return {"ok": True, "user_id": user_id}


# -------------------------
# Reporting
# -------------------------
def _reward_out(r) -> dict:
    return {
        "reward_code": r.reward_code,
        "user_id": r.user_id,
        "points_used": r.points_used,
        "is_redeemed": r.is_redeemed,
        "expires_at": r.expires_at.isoformat(),
        "redeemed_at": r.redeemed_at.isoformat() if r.redeemed_at else None,
        "venue_name": r.venue_name,
        "venue_id": r.venue_id,
        "created_at": r.created_at.isoformat() if r.created_at else None,
    }


@router.get("/venues/{venue_id}/stats")
async def venue_stats(venue_id: str, request: Request, days: int = 30):
    stats = await request.app.state.services.ledger.venue_stats(venue_id, days=max(days, 1))
    if stats is None:
        raise HTTPException(status_code=404, detail="Venue has no QR codes")
    return asdict(stats)


@router.get("/venues/{venue_id}/scans")
async def venue_scans(venue_id: str, request: Request, limit: int = 50, offset: int = 0):
    entries, total = await request.app.state.services.ledger.venue_scans(
        venue_id, limit=min(limit, 200), offset=offset
    )
    return {
        "total": total,
        "scans": [
            {
                "code_id": e.code_id,
                "user_id": e.user_id,
                "user_name": e.user_name,
                "platform_user_id": e.platform_user_id,
                "points_earned": e.points_earned,
                "scanned_at": e.scanned_at.isoformat(),
            }
            for e in entries
        ],
    }


@router.get("/leaderboard")
async def leaderboard(request: Request, limit: int = 100):
    users = await request.app.state.services.ledger.leaderboard(limit=min(limit, 500))
    return [
        {
            "rank": i,
            "user_id": u.id,
            "name": u.name,
            "username": u.username,
            "points": u.points,
            "total_scans": u.total_scans,
        }
        for i, u in enumerate(users, start=1)
    ]


@router.get("/stats")
async def system_stats(request: Request):
    return asdict(await request.app.state.services.ledger.system_stats())


@router.get("/rewards")
async def all_rewards(request: Request, status: str = "all", limit: int = 50, offset: int = 0):
    try:
        rewards, total = await request.app.state.services.ledger.all_rewards(
            status=status, limit=min(limit, 200), offset=offset
        )
    except ValueError as e:
        return {"ok": False, "error": str(e)}
    return {"ok": True, "total": total, "rewards": [_reward_out(r) for r in rewards]}
