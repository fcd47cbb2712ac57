# 本地 dummy 数据源：不联网，生成体育新闻 + 盘口，用于本地跑通整条管线

import random
from typing import List, Optional

from clipscout.models import FetchResult, NewsItemType, RawNewsItem, RawOdds
from clipscout.utils import HOUR_MS, now_ms

# (类型, 标题) 模板，覆盖不同类型与分数段
TEMPLATES = {
    "NFL": [
        (NewsItemType.BREAKING, "BREAKING: Patrick Mahomes ruled out for Sunday, Chiefs scramble at QB"),
        (NewsItemType.TRADE, "Raiders agree to trade Davante Adams to the Jets, sources say"),
        (NewsItemType.INJURY, "Christian Mccaffrey listed questionable on latest injury report"),
        (NewsItemType.BETTING_LINE, "Bills-Dolphins spread moves to 3.5 after line movement overnight"),
        (NewsItemType.GAME_RESULT, "Eagles defeat Cowboys 31-24, clinch playoff berth"),
        (NewsItemType.ANALYSIS, "Film room: how the Ravens rebuilt their secondary"),
    ],
    "NBA": [
        (NewsItemType.BREAKING, "Breaking: Lakers sign veteran guard to contract extension"),
        (NewsItemType.INJURY, "Stephen Curry day-to-day with ankle sprain, Warriors say"),
        (NewsItemType.TRADE, "Celtics finalize trade for Bucks wing ahead of deadline"),
        (NewsItemType.RUMOR, "Knicks reportedly interested in Nets forward, per sources"),
        (NewsItemType.SCHEDULE, "Upcoming matchup: Nuggets visit Suns in rivalry rematch"),
    ],
    "MLB": [
        (NewsItemType.GAME_RESULT, "Yankees win 5-3 behind Aaron Judge milestone homer"),
        (NewsItemType.INJURY, "Dodgers place starter on injured list, out for the game Friday"),
        (NewsItemType.ANALYSIS, "Analytics deep dive: Braves bullpen numbers since June"),
    ],
    "NHL": [
        (NewsItemType.TRADE, "Maple Leafs trade defenseman to Canucks for draft pick"),
        (NewsItemType.BREAKING, "Connor Mcdavid scores in overtime, Oilers extend streak"),
    ],
}

MATCHUPS = {
    "NFL": [("Kansas City Chiefs", "Buffalo Bills"), ("Philadelphia Eagles", "Dallas Cowboys")],
    "NBA": [("Los Angeles Lakers", "Golden State Warriors"), ("Boston Celtics", "Milwaukee Bucks")],
    "MLB": [("New York Yankees", "Boston Red Sox")],
    "NHL": [("Toronto Maple Leafs", "Vancouver Canucks")],
}


def generate(sport: str, count: int = 2, seed: Optional[int] = None, now_utc: Optional[int] = None) -> FetchResult:
    """
    生成 count 条新闻 + 该项目所有对阵的盘口。
    seed 相同则输出相同（external_id 也相同，重复拉取会被精确去重拦下）。
    """
    rng = random.Random(seed)
    now = now_ms() if now_utc is None else now_utc
    templates = TEMPLATES.get(sport.upper()) or TEMPLATES["NFL"]

    items: List[RawNewsItem] = []
    for i in range(count):
        idx = rng.randrange(len(templates))
        news_type, headline = templates[idx]
        ext = f"dummy-{sport.lower()}-{seed if seed is not None else now}-{i}"
        items.append(RawNewsItem(
            external_id=ext,
            type=news_type.value,
            headline=headline,
            content=f"{headline}. More details to follow.",
            url=f"https://example.com/news/{ext}",
            published_at_utc=now - rng.randrange(0, 6) * HOUR_MS,
            author="dummy",
            raw={"generated": True, "template_id": idx},
        ))

    odds: List[RawOdds] = []
    for n, (home, away) in enumerate(MATCHUPS.get(sport.upper(), [])):
        odds.append(RawOdds(
            home_team=home,
            away_team=away,
            game_date_utc=now + (n + 1) * 6 * HOUR_MS,
            external_game_id=f"dummy-{sport.lower()}-g{n}",
            home_moneyline=-150 + rng.randrange(0, 60),
            away_moneyline=130 + rng.randrange(0, 60),
            spread=-3.5,
            spread_juice=-110,
            over_under=44.5,
            over_juice=-110,
            under_juice=-110,
        ))
    return FetchResult(items=items, odds=odds)
