# -*- coding: utf-8 -*-
"""
scorer.py
新闻重要性打分：8 个因子各自归一到 [0,1]，按固定权重加权求和，再 *100 取整。
- recency           发布时间指数衰减
- time_sensitivity  突发 vs 常青
- entity_relevance  提到的球队/球员数量
- topic_weight      按新闻类型
- exclusivity       独家/首发的文本信号
- source_authority  来源权威度
- game_proximity    离相关比赛开赛还有多久
- betting_relevance 对盘口的影响

所有规则表都可以在构造时替换，默认值见下方常量。
输入不合法（缺字段、类型不对）一律按"没有信号"处理，不抛异常。
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Pattern, Sequence, Tuple

from .utils import HOUR_MS, now_ms

WEIGHTS: Dict[str, float] = {
    "recency": 0.15,
    "time_sensitivity": 0.15,
    "entity_relevance": 0.15,
    "topic_weight": 0.15,
    "exclusivity": 0.10,
    "source_authority": 0.20,
    "game_proximity": 0.05,
    "betting_relevance": 0.05,
}

TOPIC_WEIGHTS: Dict[str, float] = {
    "TRADE": 0.95,
    "BREAKING": 0.9,
    "INJURY": 0.85,
    "BETTING_LINE": 0.75,
    "GAME_RESULT": 0.7,
    "RUMOR": 0.6,
    "SCHEDULE": 0.4,
    "ANALYSIS": 0.3,
}

TIME_SENSITIVITY: Dict[str, float] = {
    "BREAKING": 1.0,
    "TRADE": 0.9,
    "INJURY": 0.85,
    "GAME_RESULT": 0.7,
    "BETTING_LINE": 0.6,
    "RUMOR": 0.5,
    "SCHEDULE": 0.3,
    "ANALYSIS": 0.2,
}

URGENT_PHRASES: Tuple[str, ...] = ("breaking", "just in", "happening now", "developing")

# 按顺序匹配，第一条命中即返回
SOURCE_AUTHORITY_RULES: Tuple[Tuple[str, float], ...] = (
    (r"espn", 0.95),
    (r"nfl\.com|nba\.com|mlb\.com|nhl\.com", 0.95),
    (r"bleacher\s*report", 0.85),
    (r"athletic", 0.9),
    (r"yahoo\s*sports", 0.8),
    (r"cbs\s*sports", 0.85),
    (r"fox\s*sports", 0.85),
    (r"nbc\s*sports", 0.85),
    (r"draftkings|fanduel", 0.8),
    (r"twitter|x\.com", 0.7),
    (r"reddit", 0.5),
)

EXCLUSIVITY_RULES: Tuple[Tuple[str, float], ...] = (
    (r"first to report", 0.3),
    (r"exclusive", 0.25),
    (r"breaking", 0.2),
    (r"sources tell|sources say|per sources", 0.15),
    (r"confirmed", 0.1),
)
REPOST_PATTERN = r"via\s+@|retweet|RT\s*:"

BETTING_HIGH: Tuple[str, ...] = (
    r"starter|starting lineup|will start",
    r"out\s+(?:for|of)\s+(?:the\s+)?game",
    r"ruled out|doubtful|questionable",
    r"injury report",
    r"line mov(?:e|ing|ement)",
    r"spread|over/under|moneyline",
)
BETTING_MEDIUM: Tuple[str, ...] = (
    r"day-to-day",
    r"limited practice",
    r"probable",
    r"game-time decision",
)
BETTING_TYPE_FALLBACK: Dict[str, float] = {
    "INJURY": 0.7,
    "TRADE": 0.5,
    "GAME_RESULT": 0.4,
}


@dataclass
class UpcomingGame:
    teams: List[str]
    game_date_utc: int


@dataclass
class ScoreResult:
    total_score: int
    breakdown: Dict[str, float] = field(default_factory=dict)
    reasoning: str = ""


def _rx(patterns: Iterable[str]) -> List[Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


def _text(v: Any) -> str:
    return v if isinstance(v, str) else ""


def _strs(v: Any) -> List[str]:
    if not isinstance(v, (list, tuple)):
        return []
    return [s for s in v if isinstance(s, str) and s]


def _type_name(v: Any) -> str:
    # NewsItemType 枚举或字符串都行
    return str(getattr(v, "value", v) or "").upper()


class ImportanceScorer:
    def __init__(
        self,
        weights: Optional[Mapping[str, float]] = None,
        topic_weights: Optional[Mapping[str, float]] = None,
        time_sensitivity: Optional[Mapping[str, float]] = None,
        source_authority_rules: Sequence[Tuple[str, float]] = SOURCE_AUTHORITY_RULES,
        exclusivity_rules: Sequence[Tuple[str, float]] = EXCLUSIVITY_RULES,
        betting_high: Sequence[str] = BETTING_HIGH,
        betting_medium: Sequence[str] = BETTING_MEDIUM,
    ):
        self.weights = dict(weights or WEIGHTS)
        if set(self.weights) != set(WEIGHTS):
            raise ValueError(f"weights must define exactly {sorted(WEIGHTS)}")
        self.topic_weights = dict(topic_weights or TOPIC_WEIGHTS)
        self.time_sensitivity_table = dict(time_sensitivity or TIME_SENSITIVITY)
        self.authority_rules = [(re.compile(p, re.IGNORECASE), s) for p, s in source_authority_rules]
        self.exclusivity_rules = [(re.compile(p, re.IGNORECASE), s) for p, s in exclusivity_rules]
        self.repost = re.compile(REPOST_PATTERN, re.IGNORECASE)
        self.betting_high = _rx(betting_high)
        self.betting_medium = _rx(betting_medium)

    # ---------- 单因子 ----------

    def recency(self, published_at_utc: Any, now_utc: int) -> float:
        if not isinstance(published_at_utc, (int, float)) or isinstance(published_at_utc, bool):
            return 0.05
        hours = (now_utc - published_at_utc) / HOUR_MS
        if hours <= 0:
            return 1.0
        if hours >= 72:
            return 0.05
        return math.exp(-hours / 17)

    def time_sensitivity(self, news_type: str, headline: str) -> float:
        low = headline.lower()
        if any(p in low for p in URGENT_PHRASES):
            return 1.0
        return self.time_sensitivity_table.get(news_type, 0.3)

    @staticmethod
    def entity_relevance(teams: List[str], players: List[str]) -> float:
        if not teams and not players:
            return 0.2
        score = 0.3 + min(len(teams) * 0.15, 0.3) + min(len(players) * 0.1, 0.4)
        return min(score, 1.0)

    def topic_weight(self, news_type: str) -> float:
        return self.topic_weights.get(news_type, 0.3)

    def exclusivity(self, headline: str, content: str) -> float:
        text = f"{headline} {content}"
        score = 0.3
        for pattern, bonus in self.exclusivity_rules:
            if pattern.search(text):
                score += bonus
        if self.repost.search(text):
            score -= 0.2
        return max(0.0, min(score, 1.0))

    def source_authority(self, source_name: str) -> float:
        if not source_name:
            return 0.5
        for pattern, score in self.authority_rules:
            if pattern.search(source_name):
                return score
        return 0.5

    @staticmethod
    def game_proximity(teams: List[str], games: Sequence[UpcomingGame], now_utc: int) -> float:
        if not teams or not games:
            return 0.3
        closest = math.inf
        for g in games:
            game_teams = [t.lower() for t in _strs(getattr(g, "teams", None))]
            hit = any(
                gt in t.lower() or t.lower() in gt
                for t in teams for gt in game_teams
            )
            if not hit:
                continue
            when = getattr(g, "game_date_utc", None)
            if not isinstance(when, (int, float)):
                continue
            hours = (when - now_utc) / HOUR_MS
            if 0 <= hours < closest:
                closest = hours
        if closest == math.inf:
            return 0.3
        if closest <= 2:
            return 1.0
        if closest <= 12:
            return 0.8
        if closest <= 24:
            return 0.6
        if closest <= 48:
            return 0.4
        return 0.3

    def betting_relevance(self, news_type: str, headline: str, content: str) -> float:
        if news_type == "BETTING_LINE":
            return 1.0
        text = f"{headline} {content}"
        if any(p.search(text) for p in self.betting_high):
            return 0.9
        if any(p.search(text) for p in self.betting_medium):
            return 0.6
        return BETTING_TYPE_FALLBACK.get(news_type, 0.2)

    # ---------- 汇总 ----------

    def score(
        self,
        item: Any,
        source_name: Optional[str] = None,
        upcoming_games: Optional[Sequence[UpcomingGame]] = None,
        now_utc: Optional[int] = None,
    ) -> ScoreResult:
        """
        item 只需要有 type / headline / content / published_at_utc / teams / players 属性
        """
        now = now_ms() if now_utc is None else now_utc
        news_type = _type_name(getattr(item, "type", None))
        headline = _text(getattr(item, "headline", None))
        content = _text(getattr(item, "content", None))
        teams = _strs(getattr(item, "teams", None))
        players = _strs(getattr(item, "players", None))

        breakdown = {
            "recency": self.recency(getattr(item, "published_at_utc", None), now),
            "time_sensitivity": self.time_sensitivity(news_type, headline),
            "entity_relevance": self.entity_relevance(teams, players),
            "topic_weight": self.topic_weight(news_type),
            "exclusivity": self.exclusivity(headline, content),
            "source_authority": self.source_authority(_text(source_name)),
            "game_proximity": self.game_proximity(teams, list(upcoming_games or []), now),
            "betting_relevance": self.betting_relevance(news_type, headline, content),
        }
        total = sum(breakdown[k] * w for k, w in self.weights.items())
        total_score = max(0, min(100, math.floor(total * 100 + 0.5)))
        return ScoreResult(total_score, breakdown, generate_reasoning(breakdown, news_type))


def generate_reasoning(b: Mapping[str, float], news_type: str) -> str:
    reasons: List[str] = []
    if b["recency"] > 0.8:
        reasons.append("Very recent news")
    elif b["recency"] > 0.5:
        reasons.append("Recent news")
    elif b["recency"] < 0.2:
        reasons.append("Older news")
    if b["topic_weight"] > 0.8:
        reasons.append(f"High-impact {news_type.lower().replace('_', ' ', 1)} news")
    if b["source_authority"] > 0.8:
        reasons.append("From authoritative source")
    if b["exclusivity"] > 0.7:
        reasons.append("Appears to be exclusive/breaking")
    if b["betting_relevance"] > 0.7:
        reasons.append("May affect betting lines")
    if b["game_proximity"] > 0.7:
        reasons.append("Relates to upcoming game")
    return ". ".join(reasons) or "Standard news item"


_default = ImportanceScorer()


def calculate_importance_score(
    item: Any,
    source_name: Optional[str] = None,
    upcoming_games: Optional[Sequence[UpcomingGame]] = None,
    now_utc: Optional[int] = None,
) -> ScoreResult:
    return _default.score(item, source_name, upcoming_games, now_utc)


def batch_calculate_importance(
    items: Iterable[Any],
    source_name: Optional[str] = None,
    now_utc: Optional[int] = None,
) -> Dict[str, ScoreResult]:
    """按 id 返回各条的打分；没有 upcoming games 上下文"""
    return {item.id: _default.score(item, source_name, None, now_utc) for item in items}


def sort_by_importance(items: Iterable[Any]) -> List[Any]:
    """按 importance_score 降序；同分保持原顺序（sorted 稳定）"""
    return sorted(items, key=lambda it: getattr(it, "importance_score", 0) or 0, reverse=True)
