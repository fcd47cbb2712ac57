# -*- coding: utf-8 -*-
"""
tests/test_config.py
配置合并 / 环境变量覆盖 / sources.yml 同步
"""

import pytest

from clipscout.collector import sync_sources
from clipscout.config import DEFAULT_CFG, ROOT, load_cfg


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for k in ("CLIPSCOUT_DB_PATH", "CRON_SECRET", "CLIPSCOUT_ENV", "CLIPSCOUT_LOG_LEVEL"):
        monkeypatch.delenv(k, raising=False)


def test_missing_file_uses_defaults(tmp_path):
    cfg = load_cfg(tmp_path / "nope.yml")
    assert cfg["queue"] == DEFAULT_CFG["queue"]
    assert cfg["environment"] == "production"


def test_file_merges_into_defaults(tmp_path):
    p = tmp_path / "config.yml"
    p.write_text("queue:\n  attempts: 5\n  concurrency:\n    clip-pair: 1\ndatabase:\n  path: data/x.db\n",
                 encoding="utf-8")
    cfg = load_cfg(p)
    assert cfg["queue"]["attempts"] == 5
    assert cfg["queue"]["backoff_sec"] == 5
    assert cfg["queue"]["concurrency"]["clip-pair"] == 1
    assert cfg["queue"]["concurrency"]["source-fetch"] == 3
    assert cfg["database"]["path"] == str(ROOT / "data/x.db")
    # 默认值本身不被改动
    assert DEFAULT_CFG["queue"]["attempts"] == 3


def test_bad_yaml_falls_back(tmp_path):
    p = tmp_path / "config.yml"
    p.write_text("queue: [unclosed\n", encoding="utf-8")
    assert load_cfg(p)["queue"]["attempts"] == 3


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "abc")
    monkeypatch.setenv("CLIPSCOUT_ENV", "development")
    monkeypatch.setenv("CLIPSCOUT_DB_PATH", ":memory:")
    cfg = load_cfg(tmp_path / "nope.yml")
    assert cfg["web"]["cron_secret"] == "abc"
    assert cfg["environment"] == "development"
    assert cfg["database"]["path"] == ":memory:"


def test_sync_sources_from_yaml(with_store, tmp_path):
    p = tmp_path / "sources.yml"
    p.write_text(
        """
org_id: acme
sources:
  - id: dummy-nfl
    name: Dummy NFL
    type: dummy
    sport: nfl
    schedule_type: hourly
    refresh_interval_min: 30
    is_scheduled: true
    config: {count: 2, seed: 1}
  - id: bad-rss
    type: RSS_FEED
    config: {feed_url: "ftp://nowhere"}
queries:
  - id: q1
    name: weekday clips
    schedule_type: WEEKDAYS
    is_scheduled: true
""",
        encoding="utf-8",
    )

    async def body(store):
        assert await sync_sources(store, p) == (2, 1)
        src = await store.get_source("dummy-nfl")
        assert (src.org_id, src.type, src.sport, src.schedule_type) == ("acme", "DUMMY", "NFL", "HOURLY")
        assert src.refresh_interval_min == 30 and src.is_scheduled
        # 配置不合法照样入库，只记警告
        assert (await store.get_source("bad-rss")).name == "bad-rss"
        q = await store.get_query("q1")
        assert q.org_id == "acme" and q.next_run_at_utc is not None

        # 再同步一次不会重置运行态
        await store.record_source_success("dummy-nfl", 123)
        await sync_sources(store, p)
        assert (await store.get_source("dummy-nfl")).fetch_count == 1

    with_store(body)


def test_sync_sources_missing_file(with_store, tmp_path):
    async def body(store):
        assert await sync_sources(store, tmp_path / "none.yml") == (0, 0)

    with_store(body)
