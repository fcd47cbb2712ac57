# -*- coding: utf-8 -*-
"""
entities.py
从标题+正文抽取 球队 / 球员 / 话题标签。
纯函数：同样的输入 + 同样的字典，输出恒定。球队字典在 ops/teams.yml。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Pattern, Sequence, Tuple, Union

from .config import OPS_DIR, load_yaml
from .utils import get_logger

log = get_logger("entities")


@dataclass(frozen=True)
class TeamInfo:
    full_name: str
    city: str
    name: str
    abbreviation: str


@dataclass
class ExtractedEntities:
    teams: List[str] = field(default_factory=list)
    players: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)


# 有序规则：(pattern, topic)，每条命中都加标签
TOPIC_RULES: Tuple[Tuple[str, str], ...] = (
    (r"\b(trade|traded|trading|deal)\b", "trade"),
    (r"\b(injur(?:y|ed|ies)|out for|day-to-day|questionable|doubtful|probable)\b", "injury"),
    (r"\b(sign(?:ed|ing|s)?|free agent|contract|extension)\b", "signing"),
    (r"\b(draft(?:ed)?|pick|selection|prospect)\b", "draft"),
    (r"\b(retire(?:d|ment|s)?)\b", "retirement"),
    (r"\b(suspen(?:d|ded|sion))\b", "suspension"),
    (r"\b(fir(?:e|ed|ing)|coach|manag(?:er|ement))\b", "coaching"),
    (r"\b(playoff|postseason|elimination|clinch)\b", "playoffs"),
    (r"\b(champion|title|trophy|ring)\b", "championship"),
    (r"\b(record|milestone|historic|first-ever)\b", "milestone"),
    (r"\b(odds|betting|line|spread|over/under)\b", "betting"),
    (r"\b(mvp|all-star|pro bowl|all-pro)\b", "awards"),
    (r"\b(breakout|emerging|rising|rookie)\b", "rising-star"),
    (r"\b(controversy|scandal|investigation)\b", "controversy"),
    (r"\b(stat(?:s|istics)?|numbers|analytics)\b", "analytics"),
)

# 看起来像人名、其实不是的常见短语
COMMON_PHRASES = frozenset(p.lower() for p in (
    "Breaking News", "Sports Center", "First Take", "Get Up",
    "Around The", "According To", "Sources Say", "Per Sources",
    "Multiple Sources", "League Sources", "Team Sources",
    "Free Agency", "Trade Deadline", "All Star", "Pro Bowl",
    "Super Bowl", "World Series", "Stanley Cup", "NBA Finals",
    "United States", "New York", "Los Angeles", "San Francisco",
    "San Diego", "San Antonio", "Las Vegas",
))

# FirstName [M.] LastName[-Hyphen]
PLAYER_NAME_RE = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z]\.?)?\s+[A-Z][a-z]+(?:-[A-Z][a-z]+)?)\b")


def load_teams(path: Optional[Union[str, Path]] = None) -> Dict[str, List[TeamInfo]]:
    """读取球队字典；文件缺失时返回空字典（只是抽不出球队）"""
    p = Path(path) if path else OPS_DIR / "teams.yml"
    if not p.exists():
        log.warning("未找到 %s，球队抽取为空", p)
        return {}
    raw = load_yaml(p) or {}
    out: Dict[str, List[TeamInfo]] = {}
    for sport, rows in raw.items():
        out[str(sport).upper()] = [TeamInfo(**r) for r in (rows or [])]
    return out


class EntityExtractor:
    def __init__(
        self,
        teams_by_sport: Dict[str, Sequence[TeamInfo]],
        topic_rules: Iterable[Tuple[str, str]] = TOPIC_RULES,
        common_phrases: Iterable[str] = COMMON_PHRASES,
    ):
        self.teams_by_sport = {k.upper(): list(v) for k, v in teams_by_sport.items()}
        self.topic_rules: List[Tuple[Pattern[str], str]] = [
            (re.compile(p, re.IGNORECASE), t) for p, t in topic_rules
        ]
        self.common_phrases = frozenset(s.lower() for s in common_phrases)

    def extract(self, headline: Optional[str], content: Optional[str], sport: Optional[str]) -> ExtractedEntities:
        text = f"{headline or ''} {content or ''}"
        return ExtractedEntities(
            teams=self.extract_teams(text, sport),
            players=self.extract_players(text, sport),
            topics=self.extract_topics(text),
        )

    def _teams(self, sport: Optional[str]) -> List[TeamInfo]:
        return self.teams_by_sport.get(str(sport or "").upper(), [])

    def extract_teams(self, text: str, sport: Optional[str]) -> List[str]:
        lower = text.lower()
        found: List[str] = []
        for team in self._teams(sport):
            patterns = (
                team.name.lower(),
                team.city.lower(),
                team.abbreviation.lower(),
                f"{team.city} {team.name}".lower(),
            )
            if any(p and p in lower for p in patterns) and team.full_name not in found:
                found.append(team.full_name)
        return found

    def extract_players(self, text: str, sport: Optional[str]) -> List[str]:
        players: List[str] = []
        for m in PLAYER_NAME_RE.finditer(text):
            name = m.group(1)
            if name in players or self._is_team_name(name, sport) or name.lower() in self.common_phrases:
                continue
            players.append(name)
        return players

    def _is_team_name(self, name: str, sport: Optional[str]) -> bool:
        low = name.lower()
        return any(
            low in (t.full_name.lower(), t.name.lower(), t.city.lower())
            for t in self._teams(sport)
        )

    def extract_topics(self, text: str) -> List[str]:
        topics: List[str] = []
        for pattern, topic in self.topic_rules:
            if pattern.search(text) and topic not in topics:
                topics.append(topic)
        return topics


_default: Optional[EntityExtractor] = None


def default_extractor() -> EntityExtractor:
    global _default
    if _default is None:
        _default = EntityExtractor(load_teams())
    return _default


def extract_entities(headline: Optional[str], content: Optional[str], sport: Optional[str]) -> ExtractedEntities:
    return default_extractor().extract(headline, content, sport)
