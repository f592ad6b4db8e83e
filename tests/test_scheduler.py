import asyncio
import json

import pytest

from voxdispatch.cache import ContentCache, MemoryCacheBackend
from voxdispatch.catalog import DEFAULT_PROVIDERS, ProviderCatalog
from voxdispatch.config import build_dispatch_config
from voxdispatch.errors import NoSuitableProvider, NotFound, ProviderError, ValidationError
from voxdispatch.media import MediaPreprocessor, MediaProber
from voxdispatch.models import JobStatus, SelectionCriteria, TranscriptionResult
from voxdispatch.providers import AdapterRegistry
from voxdispatch.scheduler import JobScheduler
from voxdispatch.service import create_service

PROVIDERS = [entry["name"] for entry in DEFAULT_PROVIDERS]


@pytest.fixture
def adapters(fake_adapter):
    return {name: fake_adapter(name) for name in PROVIDERS}


@pytest.fixture
def base_config(tmp_path):
    return {
        "retry_base_delay_sec": 0.0,
        "temp_dir": tmp_path / "work",
        "event_log_path": tmp_path / "events.jsonl",
    }


def _submit_and_wait(service, path, *args, timeout=10.0, **kwargs):
    async def _run():
        async with service:
            handle = await service.submit(path, *args, **kwargs)
            report = await service.wait_for(handle.request_id, timeout=timeout)
            return handle, report

    return asyncio.run(_run())


def test_short_clip_completes_with_cost(make_wav, adapters, base_config):
    service = create_service(base_config, adapters=adapters)

    handle, report = _submit_and_wait(service, make_wav(45.0))

    assert handle.status is JobStatus.QUEUED
    assert handle.provider == "whisper"
    assert handle.estimated_processing_time_ms == 13_500
    assert report.status is JobStatus.COMPLETED
    assert report.progress_percent == 100
    assert report.attempts == 1
    assert report.result.text == "hello world"
    assert report.result.provider_name == "whisper"
    assert report.result.cost_usd == pytest.approx(0.006)
    assert report.result.duration_seconds == pytest.approx(45.0, abs=0.01)
    assert report.result.cached is False
    assert report.finished_at is not None
    assert len(adapters["whisper"].calls) == 1


def test_second_identical_request_is_served_from_cache(make_wav, adapters, base_config):
    service = create_service(base_config, adapters=adapters)
    path = make_wav(5.0)

    async def _run():
        async with service:
            first = await service.submit(path, options={"language": "en"})
            await service.wait_for(first.request_id, timeout=10)
            second = await service.submit(path, options={"language": "en"})
            return second, service.get_status(second.request_id), service.usage()

    second, report, usage = asyncio.run(_run())

    assert second.cached is True
    assert second.status is JobStatus.COMPLETED
    assert second.result.cached is True
    assert report.status is JobStatus.COMPLETED
    assert report.result.text == "hello world"
    assert len(adapters["whisper"].calls) == 1
    assert usage["cache_hits"] == 1
    assert usage["cache_misses"] == 1


def test_worker_pool_bounds_concurrency(make_wav, fake_adapter, base_config):
    whisper = fake_adapter("whisper", delay=0.2)
    config = dict(base_config, max_concurrent_jobs=2, enable_caching=False)
    service = create_service(config, adapters={"whisper": whisper})
    paths = [make_wav(1.0, name=f"clip{i}.wav") for i in range(5)]

    async def _run():
        async with service:
            handles = [await service.submit(path, "whisper") for path in paths]
            return [await service.wait_for(h.request_id, timeout=10) for h in handles]

    reports = asyncio.run(_run())

    assert all(r.status is JobStatus.COMPLETED for r in reports)
    assert len(whisper.calls) == 5
    assert whisper.max_active == 2


def test_retryable_errors_exhaust_budget(make_wav, fake_adapter, rate_limited, base_config):
    whisper = fake_adapter("whisper", outcomes=[rate_limited("whisper")] * 5)
    service = create_service(dict(base_config, retry_attempts=2), adapters={"whisper": whisper})

    _, report = _submit_and_wait(service, make_wav(2.0), "whisper")

    assert report.status is JobStatus.FAILED
    assert report.attempts == 3
    assert report.error["kind"] == "ProviderError"
    assert report.error["status_code"] == 429
    assert len(whisper.calls) == 3
    assert service.usage()["retries"] == 2


def test_retry_then_success(make_wav, fake_adapter, rate_limited, base_config):
    whisper = fake_adapter("whisper", outcomes=[rate_limited("whisper")])
    service = create_service(base_config, adapters={"whisper": whisper})

    _, report = _submit_and_wait(service, make_wav(2.0), "whisper")

    assert report.status is JobStatus.COMPLETED
    assert report.attempts == 2
    assert report.error is None


def test_fatal_provider_error_is_not_retried(make_wav, fake_adapter, base_config):
    denied = ProviderError("invalid api key", provider="whisper", status_code=401, retryable=False)
    whisper = fake_adapter("whisper", outcomes=[denied])
    service = create_service(base_config, adapters={"whisper": whisper})

    _, report = _submit_and_wait(service, make_wav(2.0), "whisper")

    assert report.status is JobStatus.FAILED
    assert report.attempts == 1
    assert report.error["retryable"] is False
    assert len(whisper.calls) == 1


def test_unexpected_adapter_exception_is_retried(make_wav, fake_adapter, base_config):
    whisper = fake_adapter("whisper", outcomes=[KeyError("id")])
    service = create_service(base_config, adapters={"whisper": whisper})

    _, report = _submit_and_wait(service, make_wav(2.0), "whisper")

    assert report.status is JobStatus.COMPLETED
    assert report.attempts == 2


def test_slow_provider_times_out(make_wav, fake_adapter, base_config):
    whisper = fake_adapter("whisper", delay=5.0)
    service = create_service(dict(base_config, job_timeout_sec=0.2), adapters={"whisper": whisper})

    _, report = _submit_and_wait(service, make_wav(2.0), "whisper")

    assert report.status is JobStatus.FAILED
    assert report.error["kind"] == "Timeout"
    assert service.usage()["timeouts"] == 1


def test_unreadable_media_fails_the_job(tmp_path, adapters, base_config):
    path = tmp_path / "garbage.wav"
    path.write_bytes(b"definitely not audio" * 10)
    prober = MediaProber(ffprobe_bin=str(tmp_path / "no-such-ffprobe"))
    service = create_service(base_config, adapters=adapters, prober=prober)

    handle, report = _submit_and_wait(service, path)

    assert handle.status is JobStatus.QUEUED
    assert report.status is JobStatus.FAILED
    assert report.error["kind"] == "UnreadableMedia"
    assert all(not adapter.calls for adapter in adapters.values())


class _CopyPreprocessor(MediaPreprocessor):
    async def ensure_compatible(self, path, descriptor):
        if not self.needs_transcode(path, descriptor):
            return path
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        target = self.temp_dir / f"converted.{descriptor.first_format}"
        target.write_bytes(path.read_bytes())
        return target


def test_converted_file_is_removed_after_the_call(make_wav, adapters, base_config, tmp_path):
    source = make_wav(3.0, name="lecture.flac")
    service = create_service(
        base_config, adapters=adapters, preprocessor=_CopyPreprocessor(tmp_path / "work")
    )

    _, report = _submit_and_wait(service, source, "whisper")

    sent_path = adapters["whisper"].calls[0][0]
    assert report.status is JobStatus.COMPLETED
    assert sent_path.suffix == ".mp3"
    assert not sent_path.exists()
    assert source.exists()


def test_validation_errors_are_synchronous(tmp_path, make_wav, adapters, base_config):
    empty = tmp_path / "empty.wav"
    empty.write_bytes(b"")
    text = tmp_path / "notes.txt"
    text.write_text("hello", encoding="utf-8")
    big = make_wav(1.0, name="big.wav")
    service = create_service(dict(base_config, max_file_size_bytes=1000), adapters=adapters)

    async def _run():
        errors = []
        for path, hint in [
            (tmp_path / "missing.wav", None),
            (empty, None),
            (text, None),
            (big, None),
        ]:
            with pytest.raises(ValidationError) as excinfo:
                await service.submit(path, hint)
            errors.append(excinfo.value.message)
        return errors

    messages = asyncio.run(_run())
    assert "not found" in messages[0]
    assert "empty" in messages[1]
    assert "Unsupported" in messages[2]
    assert "exceeds" in messages[3]
    assert service.usage()["rejected_requests"] == 4
    assert len(service.scheduler.jobs) == 0


def test_unknown_provider_hint_is_not_found(make_wav, adapters, base_config):
    service = create_service(base_config, adapters=adapters)

    with pytest.raises(NotFound):
        asyncio.run(service.submit(make_wav(1.0), "acme"))


def test_hinted_provider_size_limit_is_enforced(make_wav, adapters, base_config):
    catalog = ProviderCatalog(
        list(DEFAULT_PROVIDERS)
        + [
            {
                "name": "tiny",
                "cost_per_minute": 0.001,
                "max_file_size_bytes": 100,
                "supported_formats": ["wav"],
                "quality_tier": "basic",
            }
        ]
    )
    service = create_service(base_config, adapters=adapters, catalog=catalog)

    with pytest.raises(ValidationError, match="tiny"):
        asyncio.run(service.submit(make_wav(1.0), "tiny"))


def test_no_suitable_provider_is_synchronous(make_wav, adapters, base_config):
    catalog = ProviderCatalog(
        [
            {
                "name": "tiny",
                "cost_per_minute": 0.001,
                "max_file_size_bytes": 100,
                "supported_formats": ["wav"],
                "quality_tier": "basic",
            }
        ]
    )
    service = create_service(base_config, adapters=adapters, catalog=catalog)

    with pytest.raises(NoSuitableProvider):
        asyncio.run(service.submit(make_wav(1.0)))


def test_small_files_get_priority_bonus(make_wav, adapters, base_config):
    service = create_service(base_config, adapters=adapters)
    scheduler = service.scheduler

    assert scheduler.priority_for("whisper", 1024) == 15
    assert scheduler.priority_for("whisper", 20 * 1024 * 1024) == 10
    assert scheduler.priority_for("deepgram", 1024) == 11


def test_queued_jobs_report_position_before_start(make_wav, adapters, base_config):
    service = create_service(dict(base_config, enable_caching=False), adapters=adapters)

    async def _run():
        first = await service.submit(make_wav(1.0, name="a.wav"), "deepgram")
        second = await service.submit(make_wav(1.0, name="b.wav"), "whisper")
        return first, second

    first, second = asyncio.run(_run())

    assert first.queue_position == 0
    # whisper outranks deepgram, so the later job jumps the queue.
    assert second.queue_position == 0
    assert service.scheduler.store.position(first.job_id) == 1
    assert service.get_status(first.request_id).status is JobStatus.QUEUED
    with pytest.raises(NotFound):
        service.get_status("unknown-request")


def test_queued_jobs_survive_restart(make_wav, adapters, base_config, tmp_path):
    config = dict(base_config, jobs_dir=tmp_path / "jobs")
    first = create_service(config, adapters=adapters)
    handle = asyncio.run(first.submit(make_wav(4.0), "deepgram", request_id="req-restart"))
    assert (tmp_path / "jobs" / f"{handle.job_id}.json").exists()

    second = create_service(config, adapters=adapters)

    async def _run():
        async with second:
            return await second.wait_for("req-restart", timeout=10)

    report = asyncio.run(_run())

    assert report.status is JobStatus.COMPLETED
    assert report.result.provider_name == "deepgram"
    assert report.result.cost_usd == pytest.approx(0.004)
    assert not (tmp_path / "jobs" / f"{handle.job_id}.json").exists()


def test_lifecycle_events_are_logged(make_wav, adapters, base_config, tmp_path):
    service = create_service(base_config, adapters=adapters)

    handle, _ = _submit_and_wait(service, make_wav(1.0))

    lines = (tmp_path / "events.jsonl").read_text(encoding="utf-8").splitlines()
    events = [json.loads(line) for line in lines]
    assert [e["event"] for e in events] == ["queued", "started", "completed"]
    assert {e["request_id"] for e in events} == {handle.request_id}


def test_selection_criteria_are_part_of_the_cache_key(make_wav, adapters, base_config):
    service = create_service(base_config, adapters=adapters)
    path = make_wav(5.0)
    no_whisper = SelectionCriteria(exclude=frozenset({"whisper"}))

    async def _run():
        async with service:
            first = await service.submit(path)
            await service.wait_for(first.request_id, timeout=10)
            second = await service.submit(path, criteria=no_whisper)
            report = await service.wait_for(second.request_id, timeout=10)
            third = await service.submit(path, criteria=no_whisper)
            return first, second, report, third

    first, second, report, third = asyncio.run(_run())

    assert first.provider == "whisper"
    assert second.cached is False
    assert second.provider != "whisper"
    assert report.result.provider_name == second.provider
    assert third.cached is True
    assert third.provider == second.provider
    assert len(adapters["whisper"].calls) == 1


def test_highest_priority_runs_first_then_fifo(make_wav, fake_adapter, base_config):
    shared = fake_adapter("shared")
    config = dict(base_config, max_concurrent_jobs=1, enable_caching=False)
    service = create_service(config, adapters={name: shared for name in PROVIDERS})
    plan = [
        ("a.wav", "deepgram"),
        ("b.wav", "rev"),
        ("c.wav", "whisper"),
        ("d.wav", "rev"),
        ("e.wav", "whisper"),
    ]

    async def _run():
        handles = [await service.submit(make_wav(1.0, name=name), provider) for name, provider in plan]
        async with service:
            for handle in handles:
                await service.wait_for(handle.request_id, timeout=10)

    asyncio.run(_run())

    assert [path.name for path, _ in shared.calls] == ["c.wav", "e.wav", "b.wav", "d.wav", "a.wav"]


@pytest.mark.parametrize("durable", [False, True])
def test_stop_requeues_interrupted_jobs(make_wav, fake_adapter, base_config, tmp_path, durable):
    whisper = fake_adapter("whisper", delay=0.5)
    config = dict(base_config, enable_caching=False, jobs_dir=tmp_path / "jobs" if durable else None)
    service = create_service(config, adapters={"whisper": whisper})
    scheduler = service.scheduler

    async def _run():
        await scheduler.start()
        handle = await service.submit(make_wav(2.0), "whisper")
        await asyncio.sleep(0.1)
        await scheduler.stop()
        interrupted = service.get_status(handle.request_id)
        await scheduler.start()
        try:
            report = await service.wait_for(handle.request_id, timeout=5)
        finally:
            await scheduler.stop()
        return interrupted, report

    interrupted, report = asyncio.run(_run())

    assert interrupted.status is JobStatus.QUEUED
    assert interrupted.attempts == 0
    assert report.status is JobStatus.COMPLETED
    assert report.attempts == 1
    assert len(whisper.calls) == 2


class _ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_expired_retry_is_not_counted_as_an_attempt(make_wav, fake_adapter, rate_limited):
    clock = _ManualClock()

    class _StallingAdapter(fake_adapter):
        async def transcribe(self, path, options, *, timeout):
            clock.now += 100.0
            return await super().transcribe(path, options, timeout=timeout)

    whisper = _StallingAdapter("whisper", outcomes=[rate_limited("whisper")])
    scheduler = JobScheduler(
        catalog=ProviderCatalog.default(),
        adapters=AdapterRegistry({"whisper": whisper}),
        config=build_dispatch_config(
            {"job_timeout_sec": 30.0, "retry_base_delay_sec": 0.0, "enable_caching": False}
        ),
        monotonic=clock,
    )
    path = make_wav(2.0)

    async def _run():
        await scheduler.start()
        try:
            handle = await scheduler.submit(path, "whisper")
            return await scheduler.wait_for(handle.request_id, timeout=5)
        finally:
            await scheduler.stop()

    report = asyncio.run(_run())

    assert report.status is JobStatus.FAILED
    assert report.error["kind"] == "Timeout"
    assert report.attempts == 1
    assert len(whisper.calls) == 1


def test_expired_cache_entries_are_swept(make_wav, adapters, base_config):
    clock = _ManualClock()
    backend = MemoryCacheBackend(clock=clock)
    cache = ContentCache(backend, default_ttl_sec=10)
    service = create_service(
        dict(base_config, cache_purge_interval_sec=0.05), adapters=adapters, cache=cache
    )

    async def _run():
        stale = TranscriptionResult(text="old", provider_name="whisper")
        await cache.set("transcription:stale:entry", stale)
        clock.now += 11
        async with service:
            await asyncio.sleep(0.3)

    asyncio.run(_run())

    assert len(backend) == 0
