# -*- coding: utf-8 -*-
"""
tests/test_pipeline.py
端到端：trigger -> source-fetch -> importance-score -> clip-pair，全部在进程内队列里跑。
适配器用内存假实现，不联网。
"""

import asyncio

from clipscout.adapters import SourceAdapter, get_adapter_or_raise
from clipscout.collector import ingest_items
from clipscout.errors import AdapterError
from clipscout.jobs import ExportPayload, JobQueue, JobState
from clipscout.models import Candidate, FetchResult, QueryDefinition, RawNewsItem, RawOdds
from clipscout.pipeline import Pipeline
from clipscout.scheduler import recover_orphaned_runs, trigger_query_run, trigger_source_fetch
from clipscout.utils import DAY_MS, HOUR_MS, MINUTE_MS, now_ms

from conftest import make_source


class FakeAdapter(SourceAdapter):
    type = "FAKE"
    name = "Fake"

    def __init__(self, result=None, error=None):
        self.result = result or FetchResult()
        self.error = error
        self.calls = []

    async def fetch(self, source, since_utc=None, limit=100):
        self.calls.append((source.id, since_utc, limit))
        if self.error is not None:
            raise self.error
        return self.result


def raw(ext, headline, news_type="BREAKING", age_ms=10 * MINUTE_MS, content=None):
    return RawNewsItem(external_id=ext, type=news_type, headline=headline, content=content,
                       published_at_utc=now_ms() - age_ms)


async def start(store, adapter, **kw):
    queue = JobQueue(backoff_sec=kw.pop("backoff_sec", 0.01), attempts=kw.pop("attempts", 3))
    lookup = kw.pop("adapter_lookup", lambda t: adapter)
    Pipeline(store, queue, adapter_lookup=lookup, **kw).register()
    await queue.start()
    return queue


def test_fetch_score_pair_chain(with_store):
    async def body(store):
        await store.upsert_source(make_source())
        await store.upsert_candidate(Candidate(
            id="clip-1", org_id="org-1", sport="NFL", title="Patrick Mahomes injury update Chiefs",
            teams=["Kansas City Chiefs"], people=["Patrick Mahomes"], relevance_score=0.5,
            published_at_utc=now_ms(),
        ))
        adapter = FakeAdapter(FetchResult(
            items=[raw("e1", "BREAKING: Chiefs QB Patrick Mahomes ruled out")],
            odds=[RawOdds("Kansas City Chiefs", "Buffalo Bills", now_ms() + 3 * HOUR_MS, "g1")],
        ))
        queue = await start(store, adapter)

        run = await trigger_source_fetch(store, queue, "src-1")
        await queue.drain(timeout=10)
        await queue.stop()

        done = await store.get_fetch_run(run.id)
        assert done.status == "SUCCEEDED"
        assert (done.items_fetched, done.new_items, done.duplicates_skipped, done.odds_upserted) == (1, 1, 0, 1)
        assert done.started_at_utc and done.finished_at_utc

        src = await store.get_source("src-1")
        assert src.fetch_count == 1 and src.last_success_at_utc == done.finished_at_utc

        [item] = await store.list_news_published_since("org-1", 0)
        assert item.is_processed
        assert "Kansas City Chiefs" in item.teams
        assert item.players == ["Patrick Mahomes"]
        assert item.importance_score >= 40
        assert item.score_breakdown["game_proximity"] == 0.8
        assert item.is_paired

        [match] = await store.list_clip_matches(item.id)
        assert match.candidate_id == "clip-1" and match.status == "PENDING"
        assert queue.get_job(f"score:{item.id}").state is JobState.SUCCEEDED
        assert queue.get_job(f"pair:{item.id}").state is JobState.SUCCEEDED

        # 第一次成功后 since 用 last_fetch_at
        assert adapter.calls[0][1] < now_ms() - 6 * DAY_MS

    with_store(body)


def test_refetch_counts_duplicates(with_store):
    async def body(store):
        await store.upsert_source(make_source())
        adapter = FakeAdapter(FetchResult(items=[
            raw("e1", "Chiefs sign veteran linebacker", "ANALYSIS"),
            raw("e2", "Chiefs sign veteran linebacker", "ANALYSIS"),  # 同文不同 id -> 内容指纹拦下
        ]))
        queue = await start(store, adapter)

        first = await trigger_source_fetch(store, queue, "src-1")
        await queue.drain(timeout=10)
        second = await trigger_source_fetch(store, queue, "src-1")
        await queue.drain(timeout=10)
        await queue.stop()

        r1 = await store.get_fetch_run(first.id)
        r2 = await store.get_fetch_run(second.id)
        assert (r1.new_items, r1.duplicates_skipped) == (1, 1)
        assert (r2.new_items, r2.duplicates_skipped) == (0, 2)
        assert len(await store.list_news_published_since("org-1", 0)) == 1
        # 第二次拉取从上次成功的时间点往后
        assert adapter.calls[1][1] == r1.finished_at_utc

    with_store(body)


def test_low_score_is_not_paired(with_store):
    async def body(store):
        await store.upsert_source(make_source(name="Some Blog"))
        adapter = FakeAdapter(FetchResult(items=[raw("old", "Film room notes", "ANALYSIS", age_ms=5 * DAY_MS)]))
        queue = await start(store, adapter)
        await trigger_source_fetch(store, queue, "src-1")
        await queue.drain(timeout=10)
        await queue.stop()

        [item] = await store.list_news_published_since("org-1", 0)
        assert item.is_processed and item.importance_score < 40
        assert queue.get_job(f"pair:{item.id}") is None
        assert not item.is_paired

    with_store(body)


def test_adapter_error_retries_then_fails(with_store):
    async def body(store):
        await store.upsert_source(make_source())
        adapter = FakeAdapter(error=AdapterError("feed down"))
        queue = await start(store, adapter, attempts=2)
        run = await trigger_source_fetch(store, queue, "src-1")
        await queue.drain(timeout=10)
        await queue.stop()

        assert len(adapter.calls) == 2
        assert queue.get_job(run.id).state is JobState.FAILED
        done = await store.get_fetch_run(run.id)
        assert done.status == "FAILED" and done.error_message == "feed down"
        src = await store.get_source("src-1")
        assert src.error_count == 2
        assert src.last_error_message == "feed down"
        assert src.fetch_count == 0
        # 失败结束后可以再次触发
        assert await store.find_active_fetch_run("src-1") is None

    with_store(body)


def test_run_stays_guarded_during_backoff(with_store):
    async def body(store):
        await store.upsert_source(make_source())

        class Flaky(FakeAdapter):
            async def fetch(self, source, since_utc=None, limit=100):
                self.calls.append(source.id)
                if len(self.calls) == 1:
                    raise AdapterError("blip")
                return FetchResult()

        adapter = Flaky()
        queue = await start(store, adapter, backoff_sec=0.3)
        run = await trigger_source_fetch(store, queue, "src-1")
        job = queue.get_job(run.id)
        for _ in range(100):
            if job.state is JobState.DELAYED:
                break
            await asyncio.sleep(0.01)
        assert job.state is JobState.DELAYED

        # 退避中 run 仍是 QUEUED，同一个源不能再建新 run
        waiting = await store.get_fetch_run(run.id)
        assert (waiting.status, waiting.error_message) == ("QUEUED", "blip")
        assert await trigger_source_fetch(store, queue, "src-1") is None

        await queue.drain(timeout=10)
        await queue.stop()
        assert (await store.get_fetch_run(run.id)).status == "SUCCEEDED"
        assert (await store.get_source("src-1")).error_count == 1

    with_store(body)


def test_unknown_adapter_fails_without_retry(with_store):
    async def body(store):
        await store.upsert_source(make_source(type="NOPE"))
        queue = await start(store, None, adapter_lookup=get_adapter_or_raise)
        run = await trigger_source_fetch(store, queue, "src-1")
        await queue.drain(timeout=10)
        await queue.stop()

        job = queue.get_job(run.id)
        assert job.state is JobState.FAILED and job.attempts == 1
        done = await store.get_fetch_run(run.id)
        assert done.status == "FAILED"
        assert done.error_message == "No adapter found for source type: NOPE"

    with_store(body)


def test_paused_source_is_skipped(with_store):
    async def body(store):
        await store.upsert_source(make_source(status="PAUSED"))
        adapter = FakeAdapter()
        queue = await start(store, adapter)
        run = await trigger_source_fetch(store, queue, "src-1")
        await queue.drain(timeout=10)
        await queue.stop()
        assert (await store.get_fetch_run(run.id)).status == "SKIPPED"
        assert adapter.calls == []

    with_store(body)


def test_odds_failure_does_not_fail_run(with_store, monkeypatch):
    async def body(store):
        await store.upsert_source(make_source())

        async def broken(snap):
            raise RuntimeError("odds table locked")

        monkeypatch.setattr(store, "upsert_odds", broken)
        adapter = FakeAdapter(FetchResult(
            items=[raw("e1", "Bills beat Jets", "GAME_RESULT")],
            odds=[RawOdds("Buffalo Bills", "New York Jets", now_ms() + DAY_MS)],
        ))
        queue = await start(store, adapter)
        run = await trigger_source_fetch(store, queue, "src-1")
        await queue.drain(timeout=10)
        await queue.stop()
        done = await store.get_fetch_run(run.id)
        assert done.status == "SUCCEEDED"
        assert (done.new_items, done.odds_upserted) == (1, 0)

    with_store(body)


def test_scheduled_query_delegates_to_runner(with_store):
    async def body(store):
        await store.upsert_query(QueryDefinition(id="q1", org_id="org-1", name="clips"))
        ran = []

        class Runner:
            async def run(self, query, run):
                ran.append((query.id, run.id))
                return {"videos": 3}

        queue = await start(store, None, query_runner=Runner())
        run = await trigger_query_run(store, queue, "q1")
        await queue.drain(timeout=10)
        await queue.stop()
        assert ran == [("q1", run.id)]
        assert (await store.get_query_run(run.id)).status == "SUCCEEDED"
        assert queue.get_job(run.id).result == {"videos": 3}

    with_store(body)


def test_scheduled_query_without_runner_fails(with_store):
    async def body(store):
        await store.upsert_query(QueryDefinition(id="q1", org_id="org-1", name="clips"))
        queue = await start(store, None)
        run = await trigger_query_run(store, queue, "q1")
        await queue.drain(timeout=10)
        await queue.stop()
        done = await store.get_query_run(run.id)
        assert done.status == "FAILED"
        assert queue.get_job(run.id).attempts == 1

    with_store(body)


def test_export_without_exporter_is_fatal(with_store):
    async def body(store):
        queue = await start(store, None)
        job = await queue.enqueue(ExportPayload("x", "org-1", ("c1",)))
        await queue.drain(timeout=10)
        await queue.stop()
        assert job.state is JobState.FAILED and job.attempts == 1

    with_store(body)


def test_export_delegates(with_store):
    async def body(store):
        class Exporter:
            async def export(self, payload):
                return {"rows": len(payload.candidate_ids), "format": payload.format}

        queue = await start(store, None, exporter=Exporter())
        job = await queue.enqueue(ExportPayload("x", "org-1", ("c1", "c2")))
        await queue.drain(timeout=10)
        await queue.stop()
        assert job.result == {"rows": 2, "format": "csv"}

    with_store(body)


def test_dummy_source_end_to_end(with_store):
    async def body(store):
        await store.upsert_source(make_source(type="DUMMY", config={"count": 3, "seed": 5}))
        queue = await start(store, None, adapter_lookup=get_adapter_or_raise)
        run = await trigger_source_fetch(store, queue, "src-1")
        await queue.drain(timeout=10)
        await queue.stop()
        done = await store.get_fetch_run(run.id)
        assert done.status == "SUCCEEDED"
        assert done.items_fetched == 3 and done.odds_upserted == 2
        items = await store.list_news_published_since("org-1", 0)
        assert items and all(i.is_processed for i in items)

    with_store(body)




def test_items_stored_before_a_failed_attempt_still_get_scored(with_store, monkeypatch):
    async def body(store):
        await store.upsert_source(make_source())
        original = store.insert_news_item
        calls = []

        async def flaky_insert(item):
            calls.append(item.external_id)
            if len(calls) == 2:
                raise RuntimeError("disk I/O error")
            return await original(item)

        monkeypatch.setattr(store, "insert_news_item", flaky_insert)
        adapter = FakeAdapter(FetchResult(items=[
            raw("e1", "Chiefs promote assistant to defensive coordinator", "ANALYSIS"),
            raw("e2", "Bills extend veteran safety through 2026", "ANALYSIS"),
        ]))
        queue = await start(store, adapter)
        run = await trigger_source_fetch(store, queue, "src-1")
        await queue.drain(timeout=10)
        await queue.stop()

        assert (await store.get_fetch_run(run.id)).status == "SUCCEEDED"
        items = await store.list_news_published_since("org-1", 0)
        assert sorted(i.external_id for i in items) == ["e1", "e2"]
        assert all(i.is_processed for i in items)
        for i in items:
            assert queue.get_job(f"score:{i.id}").state is JobState.SUCCEEDED

    with_store(body)


def test_run_orphaned_by_restart_completes_on_new_queue(with_store):
    async def body(store):
        await store.upsert_source(make_source())
        # 上一个进程建了 run、入了队，然后退出
        lost = JobQueue()
        run = await trigger_source_fetch(store, lost, "src-1")

        adapter = FakeAdapter(FetchResult(items=[raw("e1", "Chiefs QB Patrick Mahomes limited in practice")]))
        queue = await start(store, adapter)
        assert await recover_orphaned_runs(store, queue) == 1
        await queue.drain(timeout=10)

        assert (await store.get_fetch_run(run.id)).status == "SUCCEEDED"
        # 之后的新触发不再被挡住
        again = await trigger_source_fetch(store, queue, "src-1")
        assert again is not None and again.id != run.id
        await queue.drain(timeout=10)
        await queue.stop()

    with_store(body)


def test_unscored_exact_duplicate_is_handed_back(with_store):
    async def body(store):
        source = make_source()
        await store.upsert_source(source)
        handed = []

        async def on_stored(item):
            handed.append(item.external_id)

        items = [raw("e1", "Ravens sign rookie kicker", "ANALYSIS")]
        first = await ingest_items(store, source, items, on_stored=on_stored)
        assert (first.new_items, handed) == (1, ["e1"])

        # 还没打分：再次拉到时交回去
        again = await ingest_items(store, source, items, on_stored=on_stored)
        assert (again.new_items, again.duplicates_skipped) == (0, 1)
        assert handed == ["e1", "e1"]

        # 打过分之后只算重复
        stored = first.created[0]
        await store.save_news_score(stored.id, teams=[], players=[], topics=[], importance_score=10,
                                    score_breakdown={}, score_reasoning="Older news", scored_at_utc=now_ms())
        await ingest_items(store, source, items, on_stored=on_stored)
        assert handed == ["e1", "e1"]

    with_store(body)
