# -*- coding: utf-8 -*-
"""
tests/test_web.py
cron 触发接口：鉴权、计数、错误返回、任务状态查询。
走 httpx 的 ASGITransport，和存储在同一个事件循环里。
"""

import httpx

from clipscout.jobs import JobQueue
from clipscout.models import QueryDefinition
from clipscout.utils import now_ms
from clipscout.web import create_app

from conftest import make_source

SECRET = "s3cret"
AUTH = {"Authorization": f"Bearer {SECRET}"}


def prod_cfg(secret=SECRET):
    return {"environment": "production", "web": {"cron_secret": secret}}


async def call(app, path, headers=None):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.get(path, headers=headers or {})


async def seed_due(store):
    past = now_ms() - 1000
    await store.upsert_source(make_source(is_scheduled=True, schedule_type="HOURLY", next_fetch_at_utc=past))
    await store.upsert_query(QueryDefinition(id="q1", org_id="org-1", name="clips", schedule_type="DAILY",
                                             is_scheduled=True, next_run_at_utc=past))


def test_requires_bearer_secret(with_store):
    async def body(store):
        app = create_app(store, JobQueue(), prod_cfg())
        assert (await call(app, "/cron/source-fetch")).status_code == 401
        assert (await call(app, "/cron/source-fetch", {"Authorization": "Bearer nope"})).status_code == 401
        assert (await call(app, "/cron/source-fetch", AUTH)).status_code == 200

    with_store(body)


def test_missing_secret_only_open_in_development(with_store):
    async def body(store):
        dev = create_app(store, JobQueue(), {"environment": "development", "web": {"cron_secret": ""}})
        assert (await call(dev, "/cron/scheduler")).status_code == 200

        prod = create_app(store, JobQueue(), prod_cfg(secret=""))
        assert (await call(prod, "/cron/scheduler")).status_code == 401

    with_store(body)


def test_unknown_task_is_404(with_store):
    async def body(store):
        app = create_app(store, JobQueue(), prod_cfg())
        assert (await call(app, "/cron/nope", AUTH)).status_code == 404

    with_store(body)


def test_cron_all_enqueues_due_work(with_store):
    async def body(store):
        await seed_due(store)
        queue = JobQueue()
        app = create_app(store, queue, prod_cfg())

        resp = await call(app, "/cron/all", AUTH)
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["processedCount"] == 2
        assert data["timestamp"].endswith("Z")

        run = await store.find_active_fetch_run("src-1")
        job = (await call(app, f"/jobs/{run.id}", AUTH)).json()
        assert job["kind"] == "source-fetch" and job["state"] == "QUEUED"

        # 已排队的不会重复入队
        again = (await call(app, "/cron/all", AUTH)).json()
        assert again["processedCount"] == 0

    with_store(body)


def test_cron_source_fetch_only_counts_sources(with_store):
    async def body(store):
        await seed_due(store)
        app = create_app(store, JobQueue(), prod_cfg())
        data = (await call(app, "/cron/source-fetch", AUTH)).json()
        assert data["processedCount"] == 1
        assert await store.find_active_query_run("q1") is None

    with_store(body)


def test_cron_error_returns_500(with_store, monkeypatch):
    async def body(store):
        async def boom(now_utc):
            raise RuntimeError("db gone")

        monkeypatch.setattr(store, "list_due_sources", boom)
        app = create_app(store, JobQueue(), prod_cfg())
        resp = await call(app, "/cron/source-fetch", AUTH)
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "db gone"}

    with_store(body)


def test_job_status_and_health(with_store):
    async def body(store):
        app = create_app(store, JobQueue(), prod_cfg())
        assert (await call(app, "/jobs/missing", AUTH)).status_code == 404
        assert (await call(app, "/jobs/missing")).status_code == 401

        health = (await call(app, "/health")).json()
        assert health["status"] == "ok"
        assert health["jobs"]["QUEUED"] == 0

    with_store(body)
