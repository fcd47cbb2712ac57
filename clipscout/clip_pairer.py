# -*- coding: utf-8 -*-
"""
clip_pairer.py
给打过分的新闻找匹配的视频片段。
ClipFinder 是可替换的接口（embedding 检索可以接进来）；默认用规则打分 RuleBasedClipFinder。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, List, Protocol, Sequence, Tuple

from .dedup import STOP_WORDS, jaccard, tokenize
from .models import Candidate, NewsItem
from .storage import Store
from .utils import DAY_MS


# 比去重用的停用词多一些代词/疑问词
CLIP_STOP_WORDS: FrozenSet[str] = STOP_WORDS | frozenset((
    "i", "you", "he", "she", "we", "they", "what", "which", "who", "whom",
    "how", "when", "where", "why",
))


@dataclass
class ClipMatchResult:
    candidate_id: str
    score: float
    reason: str


class ClipFinder(Protocol):
    async def find_clips_for_news(self, item: NewsItem) -> List[ClipMatchResult]:
        ...


def count_matches(a: Sequence[str], b: Sequence[str]) -> float:
    """大小写不敏感；完全相同算 1，互为子串算 0.5"""
    left = {s.lower() for s in a}
    right = {s.lower() for s in b}
    n = 0.0
    for x in left:
        if x in right:
            n += 1
            continue
        if any(x in y or y in x for y in right):
            n += 0.5
    return n


def text_similarity(t1: str, t2: str) -> float:
    a = tokenize(t1, CLIP_STOP_WORDS)
    b = tokenize(t2, CLIP_STOP_WORDS)
    if not a or not b:
        return 0.0
    return jaccard(a, b)


def score_candidate(item: NewsItem, cand: Candidate) -> Tuple[float, str]:
    score = 0.0
    reasons: List[str] = []

    teams = count_matches(item.teams, cand.teams)
    if teams > 0:
        score += 0.25 * min(teams, 2)
        reasons.append(f"{teams:g} team match(es)")

    players = count_matches(item.players, cand.people)
    if players > 0:
        score += 0.2 * min(players, 3)
        reasons.append(f"{players:g} player match(es)")

    topics = count_matches(item.topics, cand.topics)
    if topics > 0:
        score += 0.15 * min(topics, 2)
        reasons.append(f"{topics:g} topic match(es)")

    text = text_similarity(item.headline, f"{cand.title} {cand.description or ''}")
    if text > 0.3:
        score += text * 0.25
        reasons.append(f"Text similarity: {round(text * 100)}%")

    days = abs(item.published_at_utc - cand.created_at_utc) / DAY_MS
    if days < 1:
        score += 0.15
        reasons.append("Published same day")
    elif days < 3:
        score += 0.1
        reasons.append("Published within 3 days")
    elif days < 7:
        score += 0.05
        reasons.append("Published within a week")

    if cand.relevance_score > 0.7:
        score *= 1.1

    return min(score, 1.0), "; ".join(reasons) or "Low relevance"


class RuleBasedClipFinder:
    def __init__(self, store: Store, window_days: int = 7, candidate_limit: int = 100,
                 min_score: float = 0.3, max_results: int = 5):
        self.store = store
        self.window_days = window_days
        self.candidate_limit = candidate_limit
        self.min_score = min_score
        self.max_results = max_results

    async def find_clips_for_news(self, item: NewsItem) -> List[ClipMatchResult]:
        pool = await self.store.list_pairing_candidates(
            item.org_id, item.sport,
            item.published_at_utc - self.window_days * DAY_MS,
            self.candidate_limit,
        )
        out: List[ClipMatchResult] = []
        for cand in pool:
            score, reason = score_candidate(item, cand)
            if score > self.min_score:
                out.append(ClipMatchResult(cand.id, score, reason))
        out.sort(key=lambda m: m.score, reverse=True)
        return out[: self.max_results]


async def save_clip_matches(store: Store, org_id: str, news_item_id: str,
                            matches: Sequence[ClipMatchResult]) -> int:
    """同一事务内逐条 upsert，有匹配则置 is_paired"""
    async with store.transaction():
        for m in matches:
            await store.upsert_clip_match(org_id, news_item_id, m.candidate_id, m.score, m.reason)
        if matches:
            await store.set_news_paired(news_item_id)
    return len(matches)
