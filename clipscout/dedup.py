# -*- coding: utf-8 -*-
"""
dedup.py
三层去重：
1) 精确：(org, source, external_id) 唯一索引点查
2) 内容指纹：标题 + 正文前 500 字的 FNV-1a 哈希
3) 近似标题：词集合 Jaccard >= 0.7（只报告，不直接拦截）
另有 merge_duplicates：按指纹合并近 7 天的重复条目，把 ClipMatch 挪到最早那条上。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Set

from .models import NewsItem
from .storage import Store
from .utils import DAY_MS, HOUR_MS, fnv1a_32, get_logger, now_ms, to_base36

log = get_logger("dedup")

SIMILARITY_THRESHOLD = 0.7
HEADLINE_SCAN_LIMIT = 500

STOP_WORDS: FrozenSet[str] = frozenset((
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "must", "shall", "can", "this",
    "that", "these", "those", "it", "its",
))

_PUNCT = re.compile(r"[^A-Za-z0-9_\s]")


def tokenize(text: Optional[str], stop_words: FrozenSet[str] = STOP_WORDS) -> Set[str]:
    """小写、去标点、去掉 <=2 个字符的词和停用词"""
    cleaned = _PUNCT.sub("", (text or "").lower())
    return {w for w in cleaned.split() if len(w) > 2 and w not in stop_words}


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def headline_similarity(h1: Optional[str], h2: Optional[str]) -> float:
    return jaccard(tokenize(h1), tokenize(h2))


def content_fingerprint(headline: Optional[str], content: Optional[str]) -> str:
    norm = (headline or "").strip().lower() + "|" + (content or "").strip().lower()[:500]
    return to_base36(fnv1a_32(norm))


@dataclass
class SimilarItem:
    item: NewsItem
    similarity: float


async def check_exact_duplicate(store: Store, org_id: str, source_id: str, external_id: str) -> Optional[NewsItem]:
    return await store.find_news_item(org_id, source_id, external_id)


async def find_similar_headlines(
    store: Store,
    org_id: str,
    headline: str,
    window_hours: int = 24,
    threshold: float = SIMILARITY_THRESHOLD,
    now_utc: Optional[int] = None,
) -> List[SimilarItem]:
    """最近 window_hours 内（最多 500 条）相似度 >= threshold 的条目，按相似度降序"""
    now = now_ms() if now_utc is None else now_utc
    recent = await store.list_news_published_since(org_id, now - window_hours * HOUR_MS, limit=HEADLINE_SCAN_LIMIT)
    target = tokenize(headline)
    hits = []
    for item in recent:
        sim = jaccard(target, tokenize(item.headline))
        if sim >= threshold:
            hits.append(SimilarItem(item, sim))
    hits.sort(key=lambda s: s.similarity, reverse=True)
    return hits


async def check_content_duplicate(
    store: Store,
    org_id: str,
    headline: str,
    content: Optional[str],
    window_hours: int = 48,
    now_utc: Optional[int] = None,
) -> Optional[NewsItem]:
    now = now_ms() if now_utc is None else now_utc
    fp = content_fingerprint(headline, content)
    for item in await store.list_news_published_since(org_id, now - window_hours * HOUR_MS):
        if content_fingerprint(item.headline, item.content) == fp:
            return item
    return None


async def merge_duplicates(store: Store, org_id: str, dry_run: bool = True,
                           now_utc: Optional[int] = None) -> Dict[str, int]:
    """
    近 7 天按指纹分组；每组最早创建的是主条目，其余的 ClipMatch 挪到主条目后删除。
    整个合并在一个事务里。dry_run 只统计不写。
    """
    now = now_ms() if now_utc is None else now_utc
    items = await store.list_news_created_since(org_id, now - 7 * DAY_MS)

    groups: Dict[str, List[NewsItem]] = {}
    for it in items:
        groups.setdefault(content_fingerprint(it.headline, it.content), []).append(it)
    dup_groups = [g for g in groups.values() if len(g) > 1]
    merged = sum(len(g) - 1 for g in dup_groups)

    if dry_run or not dup_groups:
        return {"duplicate_groups": len(dup_groups), "items_merged": merged}

    async with store.transaction():
        for group in dup_groups:
            primary, dups = group[0], group[1:]
            moved = 0
            for d in dups:
                moved += await store.reassign_clip_matches(d.id, primary.id)
            if moved:
                await store.set_news_paired(primary.id)
            await store.delete_news_items(d.id for d in dups)
    log.info("merged %d duplicates in %d groups (org=%s)", merged, len(dup_groups), org_id)
    return {"duplicate_groups": len(dup_groups), "items_merged": merged}


async def get_dedup_stats(store: Store, org_id: str, hours: int = 24,
                          now_utc: Optional[int] = None) -> Dict[str, int]:
    """duplicates_blocked 取自 fetch run 上记录的真实跳过数"""
    now = now_ms() if now_utc is None else now_utc
    since = now - hours * HOUR_MS
    total, sources = await store.count_news_created_since(org_id, since)
    blocked = await store.sum_duplicates_skipped(org_id, since)
    return {"total_items": total, "duplicates_blocked": blocked, "unique_sources": sources}
