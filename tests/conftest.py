# -*- coding: utf-8 -*-
"""
公共 fixture：每个测试一个临时 sqlite 文件；协程用 asyncio.run 驱动。
"""
import asyncio

import pytest

from clipscout.models import NewsItem, Source
from clipscout.storage import init_db, new_id
from clipscout.utils import now_ms


@pytest.fixture
def with_store(tmp_path):
    """with_store(fn) -> fn(store) 的返回值；跑完自动关库"""

    def _run(fn):
        async def _main():
            store = await init_db(tmp_path / "test.db")
            try:
                return await fn(store)
            finally:
                await store.close()

        return asyncio.run(_main())

    return _run


def make_source(**kw) -> Source:
    base = dict(id="src-1", org_id="org-1", name="ESPN NFL", type="FAKE", sport="NFL")
    base.update(kw)
    return Source(**base)


def make_item(**kw) -> NewsItem:
    base = dict(
        id=new_id(),
        org_id="org-1",
        source_id="src-1",
        external_id=new_id(),
        type="ANALYSIS",
        sport="NFL",
        headline="Untitled",
        published_at_utc=now_ms(),
    )
    base.update(kw)
    return NewsItem(**base)


@pytest.fixture
def source_factory():
    return make_source


@pytest.fixture
def item_factory():
    return make_item
