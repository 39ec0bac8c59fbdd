"""Tests for the check cycle: locking, selection, throttling and run records."""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from restocked.db.models import CheckRun, Product
from restocked.ingest.extractor import ExtractionError, ExtractionResult
from restocked.worker.check_scheduler import CheckScheduler, SchedulerState
from restocked.worker.lease_lock import CHECK_SCHEDULER_LOCK, SqlLeaseLockManager

from conftest import FakeExtractor, create_product, create_user, create_variant, track, variant


def _scheduler(session_factory, lock_manager, notifier, extractor, **overrides) -> CheckScheduler:
    params = dict(min_check_interval_minutes=30, max_products_per_run=50, concurrency=1)
    params.update(overrides)
    return CheckScheduler(
        session_factory=session_factory,
        lock_manager=lock_manager,
        extractor=extractor,
        notification_service=notifier,
        **params,
    )


async def _tracked_product(db, user, url, last_checked_at=None):
    product = await create_product(db, url=url, last_checked_at=last_checked_at)
    await track(db, user, product)
    return product


async def _runs(session_factory) -> list[CheckRun]:
    async with session_factory() as db:
        result = await db.execute(select(CheckRun).order_by(CheckRun.id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_zero_products_records_empty_run(session_factory, lock_manager, notifier):
    extractor = FakeExtractor()
    scheduler = _scheduler(session_factory, lock_manager, notifier, extractor)

    run = await scheduler.run_cycle()

    assert run.status == "ran"
    assert run.trigger == "scheduled"
    assert run.products_selected == 0
    assert run.products_checked == 0
    assert run.products_skipped == 0
    assert run.finished_at is not None
    assert extractor.calls == []
    assert scheduler.state == SchedulerState.IDLE
    assert await lock_manager.get_lock_info(CHECK_SCHEDULER_LOCK) is None


@pytest.mark.asyncio
async def test_lock_held_records_skip_and_touches_nothing(db_session, session_factory, lock_manager, notifier):
    user = await create_user(db_session)
    product = await _tracked_product(db_session, user, "https://shop.example.com/p/1")
    token = await lock_manager.acquire(CHECK_SCHEDULER_LOCK, lease_seconds=60, holder="other-instance")

    extractor = FakeExtractor()
    run = await _scheduler(session_factory, lock_manager, notifier, extractor).run_now()

    assert run.status == "skipped"
    assert run.skip_reason == "lock held"
    assert run.trigger == "manual"
    assert extractor.calls == []
    async with session_factory() as db:
        assert (await db.get(Product, product.id)).last_checked_at is None
    # Still owned by the other instance
    assert (await lock_manager.get_lock_info(CHECK_SCHEDULER_LOCK))["token"] == token


@pytest.mark.asyncio
async def test_concurrent_triggers_one_runs_one_skips(db_session, session_factory, lock_manager, notifier):
    user = await create_user(db_session)
    url = "https://shop.example.com/p/1"
    await _tracked_product(db_session, user, url)

    gate = asyncio.Event()
    extractor = FakeExtractor({url: ExtractionResult(variants=[variant("a", "10.00")])}, gate=gate)
    scheduler = _scheduler(session_factory, lock_manager, notifier, extractor)

    first = asyncio.create_task(scheduler.run_cycle("scheduled"))
    second = asyncio.create_task(scheduler.run_cycle("manual"))

    done, pending = await asyncio.wait({first, second}, return_when=asyncio.FIRST_COMPLETED)
    skipped = done.pop().result()
    assert skipped.status == "skipped"

    gate.set()
    ran = await pending.pop()
    assert ran.status == "ran"
    assert ran.products_checked == 1

    statuses = sorted(r.status for r in await _runs(session_factory))
    assert statuses == ["ran", "skipped"]


@pytest.mark.asyncio
async def test_selection_respects_cap_and_oldest_first(db_session, session_factory, lock_manager, notifier):
    user = await create_user(db_session)
    now = datetime.utcnow()
    oldest = await _tracked_product(db_session, user, "https://s.example.com/1", now - timedelta(hours=5))
    never = await _tracked_product(db_session, user, "https://s.example.com/2", None)
    await _tracked_product(db_session, user, "https://s.example.com/3", now - timedelta(hours=1))

    extractor = FakeExtractor()
    run = await _scheduler(
        session_factory, lock_manager, notifier, extractor, max_products_per_run=2
    ).run_cycle()

    assert run.products_selected == 2
    assert run.products_skipped == 1
    assert extractor.calls == [never.url, oldest.url]


@pytest.mark.asyncio
async def test_recently_checked_and_untracked_products_skipped(db_session, session_factory, lock_manager, notifier):
    user = await create_user(db_session)
    now = datetime.utcnow()
    await _tracked_product(db_session, user, "https://s.example.com/fresh", now - timedelta(minutes=5))
    await create_product(db_session, url="https://s.example.com/untracked")
    due = await _tracked_product(db_session, user, "https://s.example.com/due", now - timedelta(minutes=45))

    extractor = FakeExtractor()
    run = await _scheduler(session_factory, lock_manager, notifier, extractor).run_cycle()

    assert extractor.calls == [due.url]
    assert run.products_selected == 1


@pytest.mark.asyncio
async def test_back_to_back_runs_throttle(db_session, session_factory, lock_manager, notifier):
    user = await create_user(db_session)
    await _tracked_product(db_session, user, "https://s.example.com/1")

    extractor = FakeExtractor()
    scheduler = _scheduler(session_factory, lock_manager, notifier, extractor)
    first = await scheduler.run_cycle()
    second = await scheduler.run_cycle()

    assert first.products_checked == 1
    assert second.products_selected == 0
    assert len(extractor.calls) == 1


@pytest.mark.asyncio
async def test_failures_are_isolated_and_recorded(db_session, session_factory, lock_manager, notifier):
    user = await create_user(db_session)
    good = await _tracked_product(db_session, user, "https://s.example.com/good")
    bad = await _tracked_product(db_session, user, "https://s.example.com/bad")
    await create_variant(db_session, good, key="a", price="100.00")

    extractor = FakeExtractor(
        {
            good.url: ExtractionResult(variants=[variant("a", "80.00")]),
            bad.url: ExtractionError("HTTP 503"),
        }
    )
    run = await _scheduler(session_factory, lock_manager, notifier, extractor).run_cycle()

    assert run.status == "ran"
    assert run.products_selected == 2
    assert run.products_checked == 1
    assert run.products_failed == 1
    assert run.changes_detected == 1
    assert run.notifications_created == 1
    assert run.errors[0]["product_id"] == bad.id
    assert "HTTP 503" in run.errors[0]["error"]


@pytest.mark.asyncio
async def test_unexpected_error_marks_run_failed_and_releases_lock(session_factory, lock_manager, notifier):
    scheduler = _scheduler(session_factory, lock_manager, notifier, FakeExtractor())

    async def broken_selection():
        raise RuntimeError("selection exploded")

    scheduler.select_due_products = broken_selection

    with pytest.raises(RuntimeError):
        await scheduler.run_cycle()

    [run] = await _runs(session_factory)
    assert run.status == "failed"
    assert "selection exploded" in run.error_message
    assert await lock_manager.get_lock_info(CHECK_SCHEDULER_LOCK) is None
    assert scheduler.state == SchedulerState.IDLE


@pytest.mark.asyncio
async def test_deferred_products_counted_as_skipped(db_session, session_factory, lock_manager, notifier):
    user = await create_user(db_session)
    for i in range(3):
        await _tracked_product(db_session, user, f"https://s.example.com/{i}")

    scheduler = _scheduler(session_factory, lock_manager, notifier, FakeExtractor(), max_products_per_run=2)
    first = await scheduler.run_cycle()
    second = await scheduler.run_cycle()

    assert (first.products_selected, first.products_skipped) == (2, 1)
    assert (second.products_selected, second.products_skipped) == (1, 0)


class UnreachableLockManager(SqlLeaseLockManager):
    async def acquire(self, name, lease_seconds, holder=None):
        raise OperationalError("SELECT 1", {}, Exception("database is down"))


@pytest.mark.asyncio
async def test_store_error_at_acquire_propagates_without_run(db_session, session_factory, notifier):
    user = await create_user(db_session)
    await _tracked_product(db_session, user, "https://s.example.com/1")
    lock_manager = UnreachableLockManager(session_factory)
    extractor = FakeExtractor()
    scheduler = _scheduler(session_factory, lock_manager, notifier, extractor)

    with pytest.raises(OperationalError):
        await scheduler.run_cycle()

    assert await _runs(session_factory) == []
    assert extractor.calls == []
    assert await lock_manager.get_lock_info(CHECK_SCHEDULER_LOCK) is None
    assert scheduler.state == SchedulerState.IDLE
