import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from helpdesk.core.errors import NotLocked, StorageUnavailable
from helpdesk.models.lockout import SubjectKind
from helpdesk.services import lockout_guard
from helpdesk.services.lockout_guard import LockoutPolicy

ACCOUNT = SubjectKind.ACCOUNT
IP = SubjectKind.IP
POLICY = LockoutPolicy(max_attempts=5, lockout_duration_seconds=900)


async def _fail(db, key, now, kind=ACCOUNT, policy=POLICY, context="10.0.0.1"):
    return await lockout_guard.record_failure(kind, key, db, context=context, policy=policy, now=now)


# ── record_failure ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_first_failure_creates_record(db, clock):
    key = str(uuid.uuid4())

    result = await _fail(db, key, clock.now())
    await db.commit()

    assert result.failed_attempts == 1
    assert result.locked is False
    assert result.attempts_remaining == 4
    record = await lockout_guard.get_record(ACCOUNT, key, db)
    assert record.failed_attempts == 1
    assert record.last_failed_at == clock.now()
    assert record.last_failed_context == "10.0.0.1"
    assert record.locked_until is None


@pytest.mark.asyncio
async def test_lock_engages_exactly_at_threshold(db, clock):
    key = str(uuid.uuid4())

    results = [await _fail(db, key, clock.now()) for _ in range(5)]

    assert [r.locked for r in results] == [False, False, False, False, True]
    assert [r.newly_locked for r in results] == [False, False, False, False, True]
    assert results[-1].remaining_seconds == 900
    status = await lockout_guard.is_locked(ACCOUNT, key, db, now=clock.now())
    assert status.locked is True
    assert status.remaining_seconds == 900


@pytest.mark.asyncio
async def test_failure_while_locked_never_extends_the_lock(db, clock):
    key = str(uuid.uuid4())
    for _ in range(5):
        await _fail(db, key, clock.now())
    locked_until = (await lockout_guard.get_record(ACCOUNT, key, db)).locked_until

    later = clock.advance(100)
    result = await _fail(db, key, later)

    assert result.locked is True
    assert result.newly_locked is False
    assert result.failed_attempts == 6
    assert result.remaining_seconds == 800
    assert (await lockout_guard.get_record(ACCOUNT, key, db)).locked_until == locked_until


@pytest.mark.asyncio
async def test_lock_runs_out_and_next_failure_starts_new_series(db, clock):
    key = str(uuid.uuid4())
    for _ in range(5):
        await _fail(db, key, clock.now())

    assert (await lockout_guard.is_locked(ACCOUNT, key, db, now=clock.now() + timedelta(seconds=899))).locked
    expired_at = clock.advance(900)
    assert (await lockout_guard.is_locked(ACCOUNT, key, db, now=expired_at)).locked is False

    result = await _fail(db, key, expired_at)
    assert result.failed_attempts == 1
    assert result.locked is False
    assert (await lockout_guard.get_record(ACCOUNT, key, db)).locked_until is None


@pytest.mark.asyncio
async def test_counter_is_sticky_without_window(db, clock):
    key = str(uuid.uuid4())
    await _fail(db, key, clock.now())

    result = await _fail(db, key, clock.advance(86_400))

    assert result.failed_attempts == 2


@pytest.mark.asyncio
async def test_window_restarts_series_after_quiet_gap(db, clock):
    key = str(uuid.uuid4())
    windowed = LockoutPolicy(max_attempts=5, lockout_duration_seconds=900, attempt_window_seconds=60)

    await _fail(db, key, clock.now(), policy=windowed)
    second = await _fail(db, key, clock.advance(30), policy=windowed)
    third = await _fail(db, key, clock.advance(120), policy=windowed)

    assert second.failed_attempts == 2
    assert third.failed_attempts == 1


@pytest.mark.asyncio
async def test_single_attempt_policy_locks_on_first_failure(db, clock):
    result = await _fail(db, "203.0.113.9", clock.now(), kind=IP, policy=LockoutPolicy(1, 60))

    assert result.locked is True
    assert result.newly_locked is True
    assert result.remaining_seconds == 60


@pytest.mark.asyncio
async def test_context_is_sanitized(db, clock):
    key = "198.51.100.7"
    await _fail(db, key, clock.now(), kind=IP, context="evil@example.com\n[FAKE] admin login ok")

    record = await lockout_guard.get_record(IP, key, db)
    assert "\n" not in record.last_failed_context
    assert "[" not in record.last_failed_context


# ── Concurrency ──────────────────────────────────────────────────────

async def _fail_in_own_session(session_factory, key, now):
    async with session_factory() as session:
        result = await _fail(session, key, now)
        await session.commit()
        return result


@pytest.mark.asyncio
async def test_concurrent_failures_all_land(session_factory, users, clock):
    key = str(users.alice.id)

    results = await asyncio.gather(
        *(_fail_in_own_session(session_factory, key, clock.now()) for _ in range(4))
    )

    assert sorted(r.failed_attempts for r in results) == [1, 2, 3, 4]
    async with session_factory() as session:
        record = await lockout_guard.get_record(ACCOUNT, key, session)
        assert record.failed_attempts == 4
        assert record.locked_until is None


@pytest.mark.asyncio
async def test_concurrent_failures_lock_exactly_once(session_factory, users, clock):
    key = str(users.bob.id)

    results = await asyncio.gather(
        *(_fail_in_own_session(session_factory, key, clock.now()) for _ in range(7))
    )

    assert sorted(r.failed_attempts for r in results) == list(range(1, 8))
    assert sum(r.newly_locked for r in results) == 1
    async with session_factory() as session:
        status = await lockout_guard.is_locked(ACCOUNT, key, session, now=clock.now())
        assert status.locked is True


# ── record_success ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_success_resets_counter_and_keeps_history(db, clock):
    key = str(uuid.uuid4())
    for _ in range(5):
        await _fail(db, key, clock.now())

    await lockout_guard.record_success(ACCOUNT, key, db, now=clock.advance(5))
    await lockout_guard.record_success(ACCOUNT, key, db, now=clock.advance(5))

    record = await lockout_guard.get_record(ACCOUNT, key, db)
    assert record.failed_attempts == 0
    assert record.locked_until is None
    assert record.last_failed_at is not None


@pytest.mark.asyncio
async def test_success_without_record_creates_nothing(db, clock):
    await lockout_guard.record_success(IP, "192.0.2.1", db, now=clock.now())

    assert await lockout_guard.get_record(IP, "192.0.2.1", db) is None


# ── unlock ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unlock_clears_and_stamps_actor(db, users, clock):
    key = str(users.alice.id)
    for _ in range(5):
        await _fail(db, key, clock.now())

    record = await lockout_guard.unlock(ACCOUNT, key, users.admin.id, db, now=clock.advance(10))

    assert record.failed_attempts == 0
    assert record.locked_until is None
    assert record.unlocked_at == clock.now()
    assert record.unlocked_by == users.admin.id
    assert (await lockout_guard.is_locked(ACCOUNT, key, db, now=clock.now())).locked is False


@pytest.mark.asyncio
async def test_second_unlock_signals_not_locked(db, users, clock):
    key = str(users.alice.id)
    for _ in range(5):
        await _fail(db, key, clock.now())

    await lockout_guard.unlock(ACCOUNT, key, users.admin.id, db, now=clock.now())
    with pytest.raises(NotLocked):
        await lockout_guard.unlock(ACCOUNT, key, users.admin.id, db, now=clock.now())

    record = await lockout_guard.get_record(ACCOUNT, key, db)
    assert record.failed_attempts == 0


@pytest.mark.asyncio
async def test_unlock_unknown_subject_signals_not_locked(db, users, clock):
    with pytest.raises(NotLocked):
        await lockout_guard.unlock(IP, "192.0.2.55", users.admin.id, db, now=clock.now())


@pytest.mark.asyncio
async def test_unlock_account_also_releases_its_last_ip(db, users, clock):
    key = str(users.alice.id)
    for _ in range(5):
        await _fail(db, key, clock.now(), context="10.0.0.1")
    await _fail(db, "10.0.0.1", clock.now(), kind=IP, policy=LockoutPolicy(1, 900), context="alice@example.com")

    record, released = await lockout_guard.unlock_account(users.alice.id, users.admin.id, db, now=clock.now())

    assert record.failed_attempts == 0
    assert released == "10.0.0.1"
    assert (await lockout_guard.is_locked(IP, "10.0.0.1", db, now=clock.now())).locked is False


@pytest.mark.asyncio
async def test_unlock_account_leaves_unlocked_ip_alone(db, users, clock):
    key = str(users.alice.id)
    await _fail(db, key, clock.now(), context="10.0.0.2")

    _, released = await lockout_guard.unlock_account(users.alice.id, users.admin.id, db, now=clock.now())

    assert released is None


# ── clear_all / stats / listing ──────────────────────────────────────

@pytest.mark.asyncio
async def test_clear_all_only_touches_one_kind(db, clock):
    await _fail(db, str(uuid.uuid4()), clock.now())
    await _fail(db, str(uuid.uuid4()), clock.now())
    await _fail(db, "192.0.2.10", clock.now(), kind=IP)

    deleted = await lockout_guard.clear_all(ACCOUNT, db)

    assert deleted == 2
    assert (await lockout_guard.stats(ACCOUNT, db, now=clock.now())).total == 0
    assert (await lockout_guard.stats(IP, db, now=clock.now())).total == 1


@pytest.mark.asyncio
async def test_stats(db, clock):
    long_lock = LockoutPolicy(max_attempts=1, lockout_duration_seconds=3 * 86_400)
    start = clock.now()
    await _fail(db, "192.0.2.1", start, kind=IP, policy=long_lock)
    now = clock.advance(2 * 86_400)
    await _fail(db, "192.0.2.2", now, kind=IP, policy=long_lock)
    await _fail(db, "192.0.2.3", now, kind=IP, policy=POLICY)
    await _fail(db, "192.0.2.3", now, kind=IP, policy=POLICY)

    stats = await lockout_guard.stats(IP, db, now=now)

    assert stats.total == 3
    assert stats.locked == 2
    assert stats.unlocked == 1
    assert stats.total_failed_attempts == 4
    assert stats.locked_in_last_24h == 1


@pytest.mark.asyncio
async def test_list_records_filters_and_searches(db, users, clock):
    for _ in range(5):
        await _fail(db, str(users.alice.id), clock.now())
    await _fail(db, str(users.bob.id), clock.now())

    locked, total_locked = await lockout_guard.list_records(ACCOUNT, db, "locked", now=clock.now())
    unlocked, _ = await lockout_guard.list_records(ACCOUNT, db, "unlocked", now=clock.now())
    everything, total = await lockout_guard.list_records(ACCOUNT, db, "all", now=clock.now())
    by_email, _ = await lockout_guard.list_records(ACCOUNT, db, "all", search="BOB@example", now=clock.now())

    assert total_locked == 1
    assert [r.subject_key for r in locked] == [str(users.alice.id)]
    assert [r.subject_key for r in unlocked] == [str(users.bob.id)]
    assert total == 2 and len(everything) == 2
    assert [r.subject_key for r in by_email] == [str(users.bob.id)]


@pytest.mark.asyncio
async def test_list_records_search_matches_wildcards_literally(db, clock):
    for key in ("node_1", "nodeX1", "50%off"):
        await _fail(db, key, clock.now(), kind=IP)

    underscore, _ = await lockout_guard.list_records(IP, db, "all", search="node_1", now=clock.now())
    percent, _ = await lockout_guard.list_records(IP, db, "all", search="%", now=clock.now())
    slash, total = await lockout_guard.list_records(IP, db, "all", search="\\", now=clock.now())

    assert [r.subject_key for r in underscore] == ["node_1"]
    assert [r.subject_key for r in percent] == ["50%off"]
    assert slash == [] and total == 0


@pytest.mark.asyncio
async def test_list_records_paginates(db, clock):
    for i in range(5):
        await _fail(db, f"192.0.2.{i}", clock.advance(1), kind=IP)

    page, total = await lockout_guard.list_records(IP, db, "all", page=2, page_size=2, now=clock.now())

    assert total == 5
    # most recently updated first
    assert [r.subject_key for r in page] == ["192.0.2.2", "192.0.2.1"]


# ── Storage failures ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_storage_failure_surfaces_as_storage_unavailable(clock):
    db = AsyncMock()
    db.execute.side_effect = OperationalError("UPDATE lockout_records", {}, Exception("connection refused"))

    with pytest.raises(StorageUnavailable):
        await lockout_guard.record_failure(ACCOUNT, "k", db, policy=POLICY, now=clock.now())
    with pytest.raises(StorageUnavailable):
        await lockout_guard.is_locked(ACCOUNT, "k", db, now=clock.now())
