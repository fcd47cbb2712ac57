# -*- coding: utf-8 -*-
"""
models.py
数据模型。字段名与 storage.py 的建表列一一对应。
时间统一为 UTC 毫秒（*_utc 字段）；多值字段在库里用分号拼接，模型里是 list。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Sport(str, Enum):
    NFL = "NFL"
    MLB = "MLB"
    NBA = "NBA"
    NHL = "NHL"
    SOCCER = "SOCCER"
    BOXING = "BOXING"
    SPORTS_BETTING = "SPORTS_BETTING"


class NewsItemType(str, Enum):
    TRADE = "TRADE"
    INJURY = "INJURY"
    GAME_RESULT = "GAME_RESULT"
    BETTING_LINE = "BETTING_LINE"
    BREAKING = "BREAKING"
    RUMOR = "RUMOR"
    ANALYSIS = "ANALYSIS"
    SCHEDULE = "SCHEDULE"


class SourceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"


class ScheduleType(str, Enum):
    MANUAL = "MANUAL"
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKDAYS = "WEEKDAYS"
    WEEKLY = "WEEKLY"
    CUSTOM = "CUSTOM"


class RunStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class TriggeredBy(str, Enum):
    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"
    API = "API"


class MatchStatus(str, Enum):
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    DISMISSED = "DISMISSED"


class GameOutcome(str, Enum):
    HOME_WIN = "HOME_WIN"
    AWAY_WIN = "AWAY_WIN"
    DRAW = "DRAW"
    PENDING = "PENDING"


# 仍在排队/执行中的状态：同一个 source / query 同时最多一条
ACTIVE_RUN_STATUSES = (RunStatus.QUEUED.value, RunStatus.RUNNING.value)


@dataclass
class Source:
    id: str
    org_id: str
    name: str
    # 适配器类型标签，如 RSS_FEED / JSON_FEED / DUMMY
    type: str
    sport: str
    config: Dict[str, Any] = field(default_factory=dict)

    schedule_type: str = ScheduleType.MANUAL.value
    schedule_cron: Optional[str] = None
    refresh_interval_min: int = 60
    is_scheduled: bool = False
    status: str = SourceStatus.ACTIVE.value

    last_fetch_at_utc: Optional[int] = None
    last_success_at_utc: Optional[int] = None
    last_error_at_utc: Optional[int] = None
    last_error_message: Optional[str] = None
    error_count: int = 0
    fetch_count: int = 0
    next_fetch_at_utc: Optional[int] = None
    last_scheduled_at_utc: Optional[int] = None
    created_at_utc: int = 0


@dataclass
class SourceFetchRun:
    id: str
    source_id: str
    org_id: str
    status: str = RunStatus.QUEUED.value
    triggered_by: str = TriggeredBy.SCHEDULED.value

    items_fetched: int = 0
    new_items: int = 0
    duplicates_skipped: int = 0
    odds_upserted: int = 0
    results_upserted: int = 0
    error_message: Optional[str] = None

    started_at_utc: Optional[int] = None
    finished_at_utc: Optional[int] = None
    created_at_utc: int = 0


@dataclass
class NewsItem:
    id: str
    org_id: str
    source_id: str
    external_id: str
    type: str
    sport: str
    headline: str
    content: Optional[str] = None
    url: Optional[str] = None
    image_url: Optional[str] = None
    published_at_utc: int = 0
    author: Optional[str] = None

    # 实体抽取结果
    teams: List[str] = field(default_factory=list)
    players: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)

    # 打分：0-100；breakdown 为各因子 0-1
    importance_score: int = 0
    score_breakdown: Dict[str, float] = field(default_factory=dict)
    score_reasoning: Optional[str] = None

    is_processed: bool = False
    is_paired: bool = False
    created_at_utc: int = 0
    scored_at_utc: Optional[int] = None


@dataclass
class OddsSnapshot:
    id: str
    org_id: str
    source_id: str
    sport: str
    home_team: str
    away_team: str
    game_date_utc: int
    external_game_id: Optional[str] = None
    home_moneyline: Optional[int] = None
    away_moneyline: Optional[int] = None
    spread: Optional[float] = None
    spread_juice: Optional[int] = None
    over_under: Optional[float] = None
    over_juice: Optional[int] = None
    under_juice: Optional[int] = None
    updated_at_utc: int = 0


@dataclass
class GameResult:
    id: str
    org_id: str
    source_id: str
    sport: str
    home_team: str
    away_team: str
    game_date_utc: int
    external_game_id: Optional[str] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    status: str = "scheduled"
    outcome: str = GameOutcome.PENDING.value
    updated_at_utc: int = 0


@dataclass
class Candidate:
    """视频候选（由外部视频管线写入，clip 配对只读）"""
    id: str
    org_id: str
    sport: str
    title: str
    description: Optional[str] = None
    channel_title: Optional[str] = None
    people: List[str] = field(default_factory=list)
    teams: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)
    relevance_score: float = 0.0
    published_at_utc: int = 0
    created_at_utc: int = 0
    deleted_at_utc: Optional[int] = None


@dataclass
class ClipMatch:
    id: str
    org_id: str
    news_item_id: str
    candidate_id: str
    match_score: float
    match_reason: Optional[str] = None
    status: str = MatchStatus.PENDING.value
    created_at_utc: int = 0
    updated_at_utc: int = 0


@dataclass
class QueryDefinition:
    id: str
    org_id: str
    name: str
    sport: Optional[str] = None
    schedule_type: str = ScheduleType.MANUAL.value
    schedule_cron: Optional[str] = None
    is_scheduled: bool = False
    is_active: bool = True
    next_run_at_utc: Optional[int] = None
    last_run_at_utc: Optional[int] = None
    created_at_utc: int = 0


@dataclass
class QueryRun:
    id: str
    org_id: str
    query_id: str
    status: str = RunStatus.QUEUED.value
    triggered_by: str = TriggeredBy.SCHEDULED.value
    error_message: Optional[str] = None
    started_at_utc: Optional[int] = None
    finished_at_utc: Optional[int] = None
    created_at_utc: int = 0


def derive_outcome(home_score: Optional[int], away_score: Optional[int], status: str) -> str:
    """比分 -> 胜负；未完赛或缺比分记 PENDING"""
    if home_score is None or away_score is None:
        return GameOutcome.PENDING.value
    if (status or "").lower() not in ("final", "completed", "closed", "post"):
        return GameOutcome.PENDING.value
    if home_score > away_score:
        return GameOutcome.HOME_WIN.value
    if away_score > home_score:
        return GameOutcome.AWAY_WIN.value
    return GameOutcome.DRAW.value


# ---------- 适配器产出的原始数据（入库前） ----------

@dataclass
class RawNewsItem:
    external_id: str
    type: str
    headline: str
    published_at_utc: int
    content: Optional[str] = None
    url: Optional[str] = None
    image_url: Optional[str] = None
    author: Optional[str] = None
    raw: Any = None


@dataclass
class RawOdds:
    home_team: str
    away_team: str
    game_date_utc: int
    external_game_id: Optional[str] = None
    home_moneyline: Optional[int] = None
    away_moneyline: Optional[int] = None
    spread: Optional[float] = None
    spread_juice: Optional[int] = None
    over_under: Optional[float] = None
    over_juice: Optional[int] = None
    under_juice: Optional[int] = None


@dataclass
class RawGameResult:
    home_team: str
    away_team: str
    game_date_utc: int
    status: str = "scheduled"
    external_game_id: Optional[str] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None


@dataclass
class FetchResult:
    items: List[RawNewsItem] = field(default_factory=list)
    odds: List[RawOdds] = field(default_factory=list)
    results: List[RawGameResult] = field(default_factory=list)
    has_more: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
