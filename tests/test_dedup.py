# -*- coding: utf-8 -*-
"""
tests/test_dedup.py
三层去重 + 合并 + 统计。
"""
from clipscout.dedup import (
    check_content_duplicate,
    check_exact_duplicate,
    content_fingerprint,
    find_similar_headlines,
    get_dedup_stats,
    headline_similarity,
    merge_duplicates,
    tokenize,
)
from clipscout.models import SourceFetchRun
from clipscout.storage import new_id
from clipscout.utils import DAY_MS, HOUR_MS, now_ms

from conftest import make_item


def test_tokenize_drops_short_and_stop_words():
    assert tokenize("The Chiefs are ON a roll, to win!") == {"chiefs", "roll", "win"}
    assert tokenize(None) == set()


def test_headline_similarity():
    assert headline_similarity("Chiefs beat Bills in overtime", "Chiefs beat Bills in overtime!") == 1.0
    assert headline_similarity("", "") == 1.0
    assert headline_similarity("Chiefs win", "") == 0.0
    sim = headline_similarity("Mahomes leads Chiefs past Bills", "Mahomes leads Chiefs over Bills")
    assert 0.6 < sim < 1.0


def test_tokenize_splits_on_unicode_whitespace():
    assert tokenize("Chiefs\xa0win again") == {"chiefs", "win", "again"}
    # 只保留 ASCII 字母数字
    assert tokenize("Pelé scores") == {"pel", "scores"}


def test_headline_similarity_is_symmetric():
    pairs = [
        ("Mahomes leads Chiefs past Bills", "Chiefs top Bills behind Mahomes"),
        ("Chiefs win", ""),
        ("Lakers sign veteran guard", "Veteran guard signs with Lakers, sources say"),
    ]
    for a, b in pairs:
        assert headline_similarity(a, b) == headline_similarity(b, a)


def test_content_fingerprint_normalizes_case_and_truncates():
    a = content_fingerprint("  Chiefs Win ", "Body " + "x" * 600)
    b = content_fingerprint("chiefs win", "body " + "x" * 495 + "DIFFERENT TAIL")
    assert a == b
    assert content_fingerprint("Chiefs win", "a") != content_fingerprint("Chiefs win", "b")


def test_exact_duplicate(with_store):
    async def body(store):
        it = make_item(external_id="e-1")
        await store.insert_news_item(it)
        assert (await check_exact_duplicate(store, "org-1", "src-1", "e-1")).id == it.id
        assert await check_exact_duplicate(store, "org-1", "src-2", "e-1") is None

    with_store(body)


def test_similar_headlines_window_and_order(with_store):
    async def body(store):
        now = now_ms()
        await store.insert_news_item(make_item(id="close", headline="Mahomes leads Chiefs past Bills tonight",
                                               published_at_utc=now - HOUR_MS))
        await store.insert_news_item(make_item(id="same", headline="Mahomes leads Chiefs past Bills",
                                               published_at_utc=now - HOUR_MS))
        await store.insert_news_item(make_item(id="stale", headline="Mahomes leads Chiefs past Bills",
                                               published_at_utc=now - 30 * HOUR_MS))
        await store.insert_news_item(make_item(id="other", headline="Lakers trade for guard",
                                               published_at_utc=now))
        hits = await find_similar_headlines(store, "org-1", "Mahomes leads Chiefs past Bills", now_utc=now)
        assert [h.item.id for h in hits] == ["same", "close"]
        assert hits[0].similarity == 1.0

    with_store(body)


def test_content_duplicate(with_store):
    async def body(store):
        now = now_ms()
        await store.insert_news_item(make_item(id="a", headline="Chiefs Win", content="Recap body",
                                               published_at_utc=now - HOUR_MS))
        await store.insert_news_item(make_item(id="old", headline="Bills Win", content="Recap body",
                                               published_at_utc=now - 3 * DAY_MS))
        hit = await check_content_duplicate(store, "org-1", "chiefs win", "recap body", now_utc=now)
        assert hit is not None and hit.id == "a"
        assert await check_content_duplicate(store, "org-1", "Bills Win", "Recap body", now_utc=now) is None

    with_store(body)


def test_merge_duplicates_moves_matches_to_earliest(with_store):
    async def body(store):
        now = now_ms()
        first = make_item(id="first", headline="Same story", content="same", created_at_utc=now - 2 * HOUR_MS)
        second = make_item(id="second", headline="Same story", content="same", source_id="src-2",
                           created_at_utc=now - HOUR_MS)
        lone = make_item(id="lone", headline="Other story", created_at_utc=now - HOUR_MS)
        for it in (first, second, lone):
            await store.insert_news_item(it)
        await store.upsert_clip_match("org-1", "second", "cand-1", 0.7, "r")

        dry = await merge_duplicates(store, "org-1", dry_run=True, now_utc=now)
        assert dry == {"duplicate_groups": 1, "items_merged": 1}
        assert await store.get_news_item("second") is not None

        res = await merge_duplicates(store, "org-1", dry_run=False, now_utc=now)
        assert res == {"duplicate_groups": 1, "items_merged": 1}
        assert await store.get_news_item("second") is None
        kept = await store.get_news_item("first")
        assert kept.is_paired is True
        assert [m.candidate_id for m in await store.list_clip_matches("first")] == ["cand-1"]

    with_store(body)


def test_dedup_stats_uses_recorded_skips(with_store):
    async def body(store):
        now = now_ms()
        await store.insert_news_item(make_item(source_id="src-1"))
        await store.insert_news_item(make_item(source_id="src-2"))
        run = SourceFetchRun(id=new_id(), source_id="src-1", org_id="org-1",
                             status="SUCCEEDED", duplicates_skipped=3)
        await store.create_fetch_run(run)
        stats = await get_dedup_stats(store, "org-1", now_utc=now + 1)
        assert stats == {"total_items": 2, "duplicates_blocked": 3, "unique_sources": 2}

    with_store(body)
