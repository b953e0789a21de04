import asyncio

import pytest

from conftest import FakeAnthropic, item_reply, selected
from snapassets.batch import Batch, BatchRegistry, BatchState
from snapassets.progress import ProgressChannel
from snapassets.vision import VisionClient


def _files(n):
    return [selected(name=f"item{i}.png", color=(i * 20 % 256, 10, 10)) for i in range(n)]


def _replies(n):
    return [item_reply(name=f"Item {i}", amount=100 * (i + 1)) for i in range(n)]


class _Recorder:
    def __init__(self):
        self.detail = []
        self.indicator = []

    def on_detail(self, completed, total, results):
        self.detail.append((completed, total, len(results)))

    def on_indicator(self, completed, total):
        self.indicator.append((completed, total))


async def test_all_files_succeed_with_monotonic_progress(store):
    client = FakeAnthropic(*_replies(4))
    batch = Batch("u1", _files(4), VisionClient(client=client), store)
    rec = _Recorder()
    batch.channel.subscribe_detail(rec.on_detail)
    batch.channel.subscribe_indicator(rec.on_indicator)

    results = await batch.run()

    assert batch.state == BatchState.COMPLETED
    assert len(results) == 4
    assert all(r.success for r in results)
    assert [r.file.name for r in results] == [f"item{i}.png" for i in range(4)]
    assert rec.indicator == [(1, 4), (2, 4), (3, 4), (4, 4)]
    assert rec.detail == [(1, 4, 1), (2, 4, 2), (3, 4, 3), (4, 4, 4)]

    assets = store.list_assets("u1")
    assert len(assets) == 4
    assert all(a.image_url.startswith("/media/users/u1/assets/images/") for a in assets)
    assert {r.image_url for r in results} == {a.image_url for a in assets}


async def test_upload_bytes_are_released_after_processing(store):
    replies = _replies(3)
    replies[1] = RuntimeError("overloaded")
    files = _files(3)
    sizes = [f.size for f in files]
    batch = Batch("u1", files, VisionClient(client=FakeAnthropic(*replies)), store)

    results = await batch.run()

    assert all(f.data == b"" for f in batch.files)
    assert [f.name for f in batch.files] == [f.name for f in files]
    assert [r.file.size for r in results] == sizes
    assert all(f.data for f in files)


async def test_failed_analysis_does_not_stop_the_batch(store):
    replies = _replies(4)
    replies[1] = RuntimeError("500 Internal Server Error")
    client = FakeAnthropic(*replies)
    batch = Batch("u1", _files(4), VisionClient(client=client), store)
    rec = _Recorder()
    batch.channel.subscribe_indicator(rec.on_indicator)

    results = await batch.run()

    assert batch.state == BatchState.COMPLETED
    assert results[1].error
    assert results[1].asset_id is None
    assert not results[1].success
    assert all(results[i].success for i in (0, 2, 3))
    assert rec.indicator[-1] == (4, 4)
    assert len(client.calls) == 4
    assert batch.summary().successful == 3
    assert batch.summary().failed == 1


async def test_unparsable_reply_is_a_per_file_error(store):
    client = FakeAnthropic("sorry, no idea", item_reply())
    batch = Batch("u1", _files(2), VisionClient(client=client), store)
    results = await batch.run()
    assert "JSON" in results[0].error
    assert results[1].success


async def test_upload_failure_keeps_saved_asset_id(store, monkeypatch):
    def broken_upload(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(store, "upload_image", broken_upload)
    batch = Batch("u1", _files(1), VisionClient(client=FakeAnthropic(item_reply())), store)
    results = await batch.run()

    assert results[0].asset_id is not None
    assert results[0].error == "disk full"
    assert not results[0].success
    assert store.get_asset("u1", results[0].asset_id).image_url == ""


async def test_duplicate_item_is_not_stored_twice(store):
    client = FakeAnthropic(item_reply(amount=800), item_reply(amount=805))
    files = [selected(name="a.png", color=(1, 1, 1)), selected(name="b.png", color=(2, 2, 2))]
    results = await Batch("u1", files, VisionClient(client=client), store).run()

    assert results[0].asset_id == results[1].asset_id
    assert results[1].duplicate
    assert results[1].image_url == results[0].image_url
    assert len(store.list_assets("u1")) == 1


async def test_bounded_concurrency(store):
    active = 0
    peak = 0
    calls = 0

    class SlowVision:
        async def analyze_async(self, data, mime_type):
            nonlocal active, peak, calls
            active += 1
            calls += 1
            name = f"Item {calls}"
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return VisionClient(client=FakeAnthropic(item_reply(name=name))).analyze(data, mime_type)

    files = _files(5)
    batch = Batch("u1", files, SlowVision(), store, concurrency=2)
    rec = _Recorder()
    batch.channel.subscribe_indicator(rec.on_indicator)
    results = await batch.run()

    assert peak == 2
    assert [c for c, _ in rec.indicator] == [1, 2, 3, 4, 5]
    assert [r.file.name for r in results] == [f.name for f in files]


async def test_sequential_by_default(store):
    order = []

    class RecordingVision:
        async def analyze_async(self, data, mime_type):
            order.append(("start", len(order)))
            await asyncio.sleep(0)
            order.append(("end", len(order)))
            raise RuntimeError("skip")

    await Batch("u1", _files(3), RecordingVision(), store).run()
    assert [kind for kind, _ in order] == ["start", "end"] * 3


async def test_escape_from_file_boundary_marks_failed(store, monkeypatch):
    batch = Batch("u1", _files(2), VisionClient(client=FakeAnthropic()), store)

    async def explode(image):
        raise RuntimeError("event loop gone")

    monkeypatch.setattr(batch, "_process_file", explode)
    await batch.run()
    assert batch.state == BatchState.FAILED
    assert batch.error == "event loop gone"
    assert batch.done


async def test_cannot_run_twice(store):
    batch = Batch("u1", _files(1), VisionClient(client=FakeAnthropic(item_reply())), store)
    await batch.run()
    with pytest.raises(RuntimeError):
        await batch.run()


def test_empty_batch_is_refused(store):
    with pytest.raises(ValueError):
        Batch("u1", [], VisionClient(client=FakeAnthropic()), store)


class TestProgressChannel:
    async def test_async_and_sync_listeners(self):
        channel = ProgressChannel("b")
        seen = []

        async def async_cb(completed, total):
            seen.append(("async", completed))

        channel.subscribe_indicator(async_cb)
        channel.subscribe_indicator(lambda c, t: seen.append(("sync", c)))
        await channel.publish(1, 2, [])
        assert seen == [("async", 1), ("sync", 1)]

    async def test_unsubscribe(self):
        channel = ProgressChannel("b")
        seen = []
        unsubscribe = channel.subscribe_detail(lambda c, t, r: seen.append(c))
        await channel.publish(1, 2, [])
        unsubscribe()
        await channel.publish(2, 2, [])
        assert seen == [1]
        assert channel.listener_count == 0

    async def test_failing_listener_is_isolated(self):
        channel = ProgressChannel("b")
        seen = []

        def bad(c, t):
            raise ValueError("listener bug")

        channel.subscribe_indicator(bad)
        channel.subscribe_indicator(lambda c, t: seen.append(c))
        await channel.publish(1, 1, [])
        assert seen == [1]


class TestRegistry:
    async def test_concurrent_batches_keep_their_own_listeners(self, store):
        client = FakeAnthropic(*_replies(5))
        registry = BatchRegistry(VisionClient(client=client), store)
        first = registry.create("u1", _files(2))
        second = registry.create("u1", [selected(name=f"s{i}.png", color=(9, 9, 100 + i)) for i in range(3)])
        rec1, rec2 = _Recorder(), _Recorder()
        first.channel.subscribe_indicator(rec1.on_indicator)
        second.channel.subscribe_indicator(rec2.on_indicator)

        await asyncio.gather(registry.start(first), registry.start(second))

        assert rec1.indicator[-1] == (2, 2)
        assert rec2.indicator[-1] == (3, 3)
        assert all(total == 2 for _, total in rec1.indicator)
        assert all(total == 3 for _, total in rec2.indicator)

    async def test_summary_is_handed_out_once(self, store):
        registry = BatchRegistry(VisionClient(client=FakeAnthropic(*_replies(2))), store)
        batch = registry.submit("u1", _files(2))
        assert [b.id for b in registry.active_for_user("u1")] == [batch.id]

        await batch.wait()
        await asyncio.sleep(0)

        assert registry.active_for_user("u1") == []
        summary = registry.pop_summary(batch.id)
        assert summary.total == 2
        assert summary.successful == 2
        assert registry.pop_summary(batch.id) is None

    async def test_cleanup_drops_old_finished_batches(self, store):
        registry = BatchRegistry(VisionClient(client=FakeAnthropic(*_replies(1))), store, ttl_seconds=0)
        batch = registry.create("u1", _files(1))
        await registry.start(batch)
        batch.updated_at -= 10
        assert registry.cleanup() == 1
        assert registry.get(batch.id) is None
