import asyncio
from datetime import datetime, timedelta

import pytest

from app.core.cache import CacheCoordinator
from app.core.config import UTC, Settings
from app.core.errors import FetchError
from app.core.scheduler import RefreshScheduler
from app.core.triggers import CronTrigger, IntervalTrigger, trigger_from_settings
from app.stores.memory import MemoryCacheStore

from conftest import FakeFetcher, repo_payload


def make_scheduler(fetcher, interval_s=0.05, max_versions=100):
    store = MemoryCacheStore()
    coordinator = CacheCoordinator(store, fetcher, max_versions=max_versions)
    return store, RefreshScheduler(coordinator, IntervalTrigger(interval_s))


@pytest.mark.asyncio
async def test_refreshes_immediately_on_start(url_a, url_b):
    fetcher = FakeFetcher(default=repo_payload("v"))
    store, scheduler = make_scheduler(fetcher, interval_s=60)

    handle = scheduler.start([url_a, url_b])
    await asyncio.sleep(0.05)
    handle.cancel()
    await handle.wait()

    assert sorted(fetcher.calls) == sorted([url_a, url_b])
    assert (await store.get(url_a)).data == repo_payload("v")
    assert (await store.get(url_b)).data == repo_payload("v")


@pytest.mark.asyncio
async def test_ticks_repeat_on_interval(url_a):
    fetcher = FakeFetcher(default=repo_payload("v"))
    store, scheduler = make_scheduler(fetcher, interval_s=0.02)

    handle = scheduler.start([url_a])
    await asyncio.sleep(0.2)
    handle.cancel()
    await handle.wait()

    assert len(fetcher.calls) >= 3
    assert len((await store.get(url_a)).history) == len(fetcher.calls)


@pytest.mark.asyncio
async def test_failing_key_does_not_stop_others_or_future_ticks(url_a, url_b):
    fetcher = FakeFetcher(default=repo_payload("ok"))
    fetcher.queue(url_a, *[FetchError(500, "boom")] * 50)
    store, scheduler = make_scheduler(fetcher, interval_s=0.02)

    handle = scheduler.start([url_a, url_b])
    await asyncio.sleep(0.15)
    handle.cancel()
    await handle.wait()

    assert fetcher.calls.count(url_a) >= 2
    assert fetcher.calls.count(url_b) >= 2
    assert await store.get(url_a) is None
    assert (await store.get(url_b)).data == repo_payload("ok")


@pytest.mark.asyncio
async def test_unexpected_exception_is_contained(url_a):
    fetcher = FakeFetcher()
    fetcher.queue(url_a, RuntimeError("bug"), repo_payload("after"))
    store, scheduler = make_scheduler(fetcher, interval_s=0.02)

    handle = scheduler.start([url_a])
    await asyncio.sleep(0.1)
    handle.cancel()
    await handle.wait()

    assert (await store.get(url_a)).history[0].data == repo_payload("after")


@pytest.mark.asyncio
async def test_cancel_is_idempotent_and_stops_ticks(url_a):
    fetcher = FakeFetcher(default=repo_payload("v"))
    _, scheduler = make_scheduler(fetcher, interval_s=0.02)

    handle = scheduler.start([url_a])
    await asyncio.sleep(0.05)
    handle.cancel()
    handle.cancel()
    await handle.wait()
    calls = len(fetcher.calls)

    await asyncio.sleep(0.1)
    assert handle.cancelled
    assert len(fetcher.calls) == calls


@pytest.mark.asyncio
async def test_cancel_lets_inflight_fetch_finish(url_a):
    gate = asyncio.Event()

    class SlowFetcher(FakeFetcher):
        async def fetch(self, url):
            self.calls.append(url)
            await gate.wait()
            return repo_payload("slow")

    fetcher = SlowFetcher()
    store, scheduler = make_scheduler(fetcher, interval_s=60)

    handle = scheduler.start([url_a])
    await asyncio.sleep(0.02)
    handle.cancel()
    gate.set()
    await handle.wait()

    assert (await store.get(url_a)).data == repo_payload("slow")


@pytest.mark.asyncio
async def test_slow_key_skips_ticks_instead_of_queueing(url_a, url_b):
    gate = asyncio.Event()

    class SlowForA(FakeFetcher):
        async def fetch(self, url):
            self.calls.append(url)
            if url == url_a:
                await gate.wait()
            return repo_payload(url)

    fetcher = SlowForA()
    _, scheduler = make_scheduler(fetcher, interval_s=0.02)

    handle = scheduler.start([url_a, url_b])
    await asyncio.sleep(0.15)
    handle.cancel()
    gate.set()
    await handle.wait()

    assert fetcher.calls.count(url_a) == 1
    assert fetcher.calls.count(url_b) >= 3


@pytest.mark.asyncio
async def test_duplicate_start_is_ignored(url_a):
    fetcher = FakeFetcher(default=repo_payload("v"))
    _, scheduler = make_scheduler(fetcher, interval_s=60)

    handle = scheduler.start([url_a])
    scheduler.start([url_a])
    await asyncio.sleep(0.05)
    handle.cancel()
    await handle.wait()

    assert fetcher.calls == [url_a]


class TestTriggers:
    NOW = datetime(2026, 2, 1, 12, 3, 20, tzinfo=UTC)

    def test_interval_counts_from_previous_fire(self):
        trigger = IntervalTrigger(300)
        prev = self.NOW - timedelta(seconds=100)
        assert trigger.next_fire_time(prev, self.NOW) == prev + timedelta(seconds=300)

    def test_interval_missed_tick_fires_now(self):
        trigger = IntervalTrigger(60)
        prev = self.NOW - timedelta(seconds=600)
        assert trigger.next_fire_time(prev, self.NOW) == self.NOW

    def test_interval_rejects_non_positive(self):
        with pytest.raises(ValueError):
            IntervalTrigger(0)

    def test_cron_every_five_minutes(self):
        trigger = CronTrigger("*/5 * * * *")
        nxt = trigger.next_fire_time(None, self.NOW)
        assert nxt == datetime(2026, 2, 1, 12, 5, 0, tzinfo=UTC)

    def test_cron_never_repeats_previous_fire(self):
        trigger = CronTrigger("*/5 * * * *")
        prev = datetime(2026, 2, 1, 12, 5, 0, tzinfo=UTC)
        early = prev - timedelta(milliseconds=1)
        assert trigger.next_fire_time(prev, early) == datetime(2026, 2, 1, 12, 10, 0, tzinfo=UTC)

    def test_cron_rejects_bad_expression(self):
        with pytest.raises(ValueError):
            CronTrigger("not a cron")

    def test_trigger_from_settings_prefers_cron(self):
        assert isinstance(trigger_from_settings(Settings(refresh_cron="*/5 * * * *")), CronTrigger)
        assert isinstance(trigger_from_settings(Settings(refresh_interval_s=30)), IntervalTrigger)
