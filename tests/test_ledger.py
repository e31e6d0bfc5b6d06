import asyncio
import re

import pytest

from tampinha.cache import RedisCache, reward_key
from tampinha.errors import Reason, Rejection, StoreUnavailable
from tampinha.ledger import LedgerEngine, ScanResult
from tests.helpers import UnreachableRedis, earn_reward, issue, new_user, scan

pytestmark = pytest.mark.asyncio


async def test_second_scan_of_same_code_is_rejected(services):
    user_id = await new_user(services)
    issued = await issue(services, points=2)

    first = await scan(services, issued, user_id)
    second = await scan(services, issued, user_id)

    assert isinstance(first, ScanResult)
    assert first.points_earned == 2
    assert second == Rejection(Reason.ALREADY_SCANNED)
    assert await services.ledger.get_balance(user_id) == {"points": 2, "total_scans": 1}


async def test_same_code_different_users(services):
    alice = await new_user(services, "5511000000001")
    bob = await new_user(services, "5511000000002")
    issued = await issue(services, points=3)

    assert isinstance(await scan(services, issued, alice), ScanResult)
    assert isinstance(await scan(services, issued, bob), ScanResult)
    assert (await services.ledger.get_balance(bob))["points"] == 3


async def test_balance_accumulates_below_threshold(services):
    user_id = await new_user(services)
    for _ in range(3):
        result = await scan(services, await issue(services, points=3), user_id)
        assert result.reward_code is None

    assert await services.ledger.get_balance(user_id) == {"points": 9, "total_scans": 3}
    assert await services.ledger.list_rewards(user_id, include_redeemed=True) == []


async def test_crossing_threshold_issues_one_reward(services):
    user_id = await new_user(services)
    r1 = await scan(services, await issue(services, points=4), user_id)
    r2 = await scan(services, await issue(services, points=4), user_id)
    r3 = await scan(services, await issue(services, points=3), user_id)

    assert r1.reward_code is None and r2.reward_code is None
    assert r3.reward_code is not None
    assert r3.balance == 11 - 10

    rewards = await services.ledger.list_rewards(user_id)
    assert len(rewards) == 1
    assert rewards[0].points_used == 10
    assert rewards[0].reward_code == r3.reward_code
    assert await services.ledger.get_balance(user_id) == {"points": 1, "total_scans": 3}


async def test_ten_single_point_scans(services):
    user_id = await new_user(services)
    results = [await scan(services, await issue(services, points=1), user_id) for _ in range(10)]

    assert [r.reward_code is not None for r in results] == [False] * 9 + [True]
    assert re.fullmatch(r"[A-Z0-9]{8}", results[-1].reward_code)
    assert results[-1].balance == 0
    assert results[-1].total_scans == 10

    rewards = await services.ledger.list_rewards(user_id, include_redeemed=True)
    assert len(rewards) == 1 and rewards[0].points_used == 10
    assert rewards[0].expires_at > rewards[0].created_at


async def test_reward_is_cached_after_commit(services, cache):
    user_id = await new_user(services)
    result = await scan(services, await issue(services, points=10), user_id)

    entry = await cache.get(reward_key(result.reward_code))
    assert entry["user_id"] == user_id
    assert entry["owner"] == "5511999990000"


async def test_unknown_user_leaves_no_scan(services):
    issued = await issue(services, points=2)
    result = await scan(services, issued, "no-such-user")

    assert result == Rejection(Reason.USER_NOT_FOUND)
    assert await services.ledger.scan_history("no-such-user") == []


async def test_inactive_user_cannot_earn(services):
    user_id = await new_user(services)
    assert await services.users.deactivate_user(user_id) is True

    result = await scan(services, await issue(services), user_id)
    assert result.reason == Reason.USER_NOT_FOUND
    assert await services.ledger.get_balance(user_id) == {"points": 0, "total_scans": 0}
    # and the code is still scannable later, nothing was recorded
    assert await services.ledger.scan_history(user_id) == []


async def test_concurrent_scans_of_same_code_one_wins(services):
    user_id = await new_user(services)
    issued = await issue(services, points=5)
    meta = await services.validator.resolve(issued.payload)

    results = await asyncio.gather(*[services.ledger.record_scan(meta, user_id) for _ in range(8)])
    accepted = [r for r in results if isinstance(r, ScanResult)]
    rejected = [r for r in results if isinstance(r, Rejection)]

    assert len(accepted) == 1, results
    assert all(r.reason == Reason.ALREADY_SCANNED for r in rejected)
    assert await services.ledger.get_balance(user_id) == {"points": 5, "total_scans": 1}


async def test_concurrent_scans_of_different_codes_lose_nothing(services):
    user_id = await new_user(services)
    metas = []
    for _ in range(9):
        issued = await issue(services, points=1)
        metas.append(await services.validator.resolve(issued.payload))

    results = await asyncio.gather(*[services.ledger.record_scan(m, user_id) for m in metas])

    assert all(isinstance(r, ScanResult) for r in results)
    assert sorted(r.balance for r in results) == list(range(1, 10))
    assert await services.ledger.get_balance(user_id) == {"points": 9, "total_scans": 9}


async def test_reward_code_collision_is_retried(services, clock):
    codes = iter(["AAAAAAAA", "AAAAAAAA", "BBBBBBBB"])
    ledger = LedgerEngine(
        services.settings,
        services.cache,
        services.ledger.session_factory,
        clock=clock,
        code_generator=lambda: next(codes),
    )
    alice = await new_user(services, "5511000000001")
    bob = await new_user(services, "5511000000002")

    first = await ledger.record_scan(await services.validator.resolve((await issue(services, points=10)).payload), alice)
    second = await ledger.record_scan(await services.validator.resolve((await issue(services, points=10)).payload), bob)

    assert first.reward_code == "AAAAAAAA"
    assert second.reward_code == "BBBBBBBB"
    assert second.balance == 0
    assert len(await services.ledger.list_rewards(bob)) == 1


async def test_cache_outage_does_not_fail_scan(services, clock):
    ledger = LedgerEngine(
        services.settings,
        RedisCache(UnreachableRedis()),
        services.ledger.session_factory,
        clock=clock,
    )
    user_id = await new_user(services)
    meta = await services.validator.resolve((await issue(services, points=10)).payload)

    result = await ledger.record_scan(meta, user_id)
    assert isinstance(result, ScanResult)
    assert result.reward_code is not None


async def test_history_and_stats(services):
    user_id = await new_user(services)
    await scan(services, await issue(services, points=6, venue_id="bar_a"), user_id)
    await scan(services, await issue(services, points=6, venue_id="bar_b"), user_id)

    history = await services.ledger.scan_history(user_id)
    assert {h.venue_id for h in history} == {"bar_a", "bar_b"}

    stats = await services.ledger.user_stats(user_id)
    assert stats.points == 2
    assert stats.total_scans == 2
    assert stats.unique_codes_scanned == 2
    assert stats.total_points_earned == 12
    assert stats.active_rewards == 1
    assert stats.redeemed_rewards == 0
    assert await services.ledger.user_stats("missing") is None


async def test_stale_metadata_for_deactivated_code(services):
    user_id = await new_user(services)
    issued = await issue(services, points=3)
    meta = await services.validator.resolve(issued.payload)
    await services.issuer.deactivate_code(meta.code_id)

    assert await services.ledger.record_scan(meta, user_id) == Rejection(Reason.INACTIVE)
    assert await services.ledger.scan_history(user_id) == []


async def test_stale_metadata_for_expired_code(services, clock):
    user_id = await new_user(services)
    meta = await services.validator.resolve((await issue(services, expiry_hours=1)).payload)
    clock.advance(hours=1)

    assert await services.ledger.record_scan(meta, user_id) == Rejection(Reason.EXPIRED)
    assert await services.ledger.get_balance(user_id) == {"points": 0, "total_scans": 0}


async def test_reward_code_exhaustion_rolls_back_scan(services, clock):
    alice = await new_user(services, "5511000000001")
    bob = await new_user(services, "5511000000002")
    taken = await earn_reward(services, alice)
    await scan(services, await issue(services, points=3), bob)

    ledger = LedgerEngine(
        services.settings.model_copy(update={"reward_code_attempts": 2}),
        services.cache,
        services.ledger.session_factory,
        clock=clock,
        code_generator=lambda: taken,
    )
    meta = await services.validator.resolve((await issue(services, points=8)).payload)

    with pytest.raises(StoreUnavailable):
        await ledger.record_scan(meta, bob)

    assert len(await services.ledger.scan_history(bob)) == 1
    assert await services.ledger.get_balance(bob) == {"points": 3, "total_scans": 1}
    assert await services.ledger.list_rewards(bob, include_redeemed=True) == []
    assert (await services.ledger.all_rewards())[1] == 1

    # nothing was recorded, so the same code can still be scanned
    result = await services.ledger.record_scan(meta, bob)
    assert result.reward_code is not None
    assert result.balance == 1


async def test_venue_stats_and_scans(services, clock):
    alice = await new_user(services, "5511000000001")
    bob = await new_user(services, "5511000000002")
    first = await issue(services, points=2, venue_id="bar_a", never_expires=True)
    second = await issue(services, points=3, venue_id="bar_a")
    await issue(services, venue_id="bar_b")
    await services.issuer.deactivate_code(second.metadata.code_id)

    await scan(services, first, alice)
    clock.advance(days=40)
    await scan(services, first, bob)

    stats = await services.ledger.venue_stats("bar_a", days=30)
    assert stats.total_codes == 2
    assert stats.active_codes == 1
    assert stats.total_scans == 2
    assert stats.unique_users == 2
    assert stats.points_distributed == 4
    assert stats.recent_scans == 1
    assert await services.ledger.venue_stats("bar_zzz") is None

    entries, total = await services.ledger.venue_scans("bar_a", limit=1)
    assert total == 2
    assert [(e.user_id, e.platform_user_id) for e in entries] == [(bob, "5511000000002")]
    older, _ = await services.ledger.venue_scans("bar_a", limit=1, offset=1)
    assert older[0].user_id == alice


async def test_leaderboard_orders_by_points_then_scans(services):
    alice = await new_user(services, "5511000000001")
    bob = await new_user(services, "5511000000002")
    carol = await new_user(services, "5511000000003")
    await scan(services, await issue(services, points=5), alice)
    await scan(services, await issue(services, points=2), bob)
    await scan(services, await issue(services, points=3), bob)
    await scan(services, await issue(services, points=9), carol)
    await services.users.deactivate_user(carol)

    board = await services.ledger.leaderboard()
    assert [u.id for u in board] == [bob, alice]
    assert [u.id for u in await services.ledger.leaderboard(limit=1)] == [bob]


async def test_system_stats_and_reward_listing(services, clock):
    alice = await new_user(services, "5511000000001")
    bob = await new_user(services, "5511000000002")
    redeemed = await earn_reward(services, alice)
    await services.redemption.redeem(redeemed, "Bar do Zé", "bar_001")
    await earn_reward(services, bob)
    clock.advance(days=services.settings.reward_validity_days, seconds=1)
    fresh = await earn_reward(services, alice)

    stats = await services.ledger.system_stats()
    assert stats.total_users == 2
    assert stats.active_users == 2
    assert stats.total_scans == 3
    assert stats.total_codes == 3
    assert stats.rewards_issued == 3
    assert stats.rewards_redeemed == 1
    assert stats.active_points == 0

    by_status = {}
    for status in ("all", "active", "redeemed", "expired"):
        rewards, total = await services.ledger.all_rewards(status=status)
        assert total == len(rewards)
        by_status[status] = [r.user_id for r in rewards]

    assert len(by_status["all"]) == 3
    assert by_status["redeemed"] == [alice]
    assert by_status["expired"] == [bob]
    assert by_status["active"] == [alice]
    [newest], total = await services.ledger.all_rewards(limit=1)
    assert total == 3 and newest.reward_code == fresh

    with pytest.raises(ValueError):
        await services.ledger.all_rewards(status="pending")
