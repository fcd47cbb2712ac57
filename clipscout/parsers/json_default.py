# JSON默认解析器：通用结构 {"items"/"data": [...], "odds": [...], "results": [...]}

from typing import Any, Dict, List, Optional, Union

from clipscout.models import FetchResult, NewsItemType, RawGameResult, RawNewsItem, RawOdds
from clipscout.parsers.rss_default import hash_id, infer_news_type, strip_html
from clipscout.utils import now_ms, parse_iso_ms


def _ts(item: Dict[str, Any], *keys: str) -> Optional[int]:
    """
    时间字段三种写法都认：
    - 毫秒时间戳（> 1e12）
    - 秒时间戳
    - ISO 字符串
    """
    for k in keys:
        v = item.get(k)
        if v is None or v == "":
            continue
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return int(v) if v > 1e12 else int(v * 1000)
        if isinstance(v, str):
            ts = parse_iso_ms(v)
            if ts is not None:
                return ts
    return None


def _num(v: Any, cast=float) -> Optional[Any]:
    if v is None or v == "":
        return None
    try:
        return cast(v)
    except (TypeError, ValueError):
        return None


def _news(item: Dict[str, Any]) -> Optional[RawNewsItem]:
    # 常见字段名: title, headline, subject
    headline = item.get("title") or item.get("headline") or item.get("subject") or ""
    # 常见字段名: url, link, href, permalink
    url = item.get("url") or item.get("link") or item.get("href") or item.get("permalink")
    if not headline and not url:
        return None
    content = strip_html(item.get("content") or item.get("summary") or item.get("description") or "")
    ext = item.get("id") or item.get("guid") or url or f"{headline}-{item.get('time', '')}"
    news_type = str(item.get("type") or "").upper()
    if news_type not in NewsItemType.__members__:
        news_type = infer_news_type(headline, content)
    return RawNewsItem(
        external_id=str(item["id"]) if item.get("id") is not None else hash_id(str(ext), "json"),
        type=news_type,
        headline=headline or "Untitled",
        content=content or None,
        url=url,
        image_url=item.get("image_url") or item.get("image"),
        published_at_utc=_ts(item, "timestamp", "published_at", "time") or now_ms(),
        author=item.get("author"),
        raw=item,
    )


def _odds(o: Dict[str, Any]) -> Optional[RawOdds]:
    when = _ts(o, "game_date", "commence_time", "start_time")
    if not o.get("home_team") or not o.get("away_team") or when is None:
        return None
    return RawOdds(
        home_team=o["home_team"],
        away_team=o["away_team"],
        game_date_utc=when,
        external_game_id=str(o["game_id"]) if o.get("game_id") is not None else None,
        home_moneyline=_num(o.get("home_moneyline"), int),
        away_moneyline=_num(o.get("away_moneyline"), int),
        spread=_num(o.get("spread")),
        spread_juice=_num(o.get("spread_juice"), int),
        over_under=_num(o.get("over_under")),
        over_juice=_num(o.get("over_juice"), int),
        under_juice=_num(o.get("under_juice"), int),
    )


def _result(r: Dict[str, Any]) -> Optional[RawGameResult]:
    when = _ts(r, "game_date", "start_time")
    if not r.get("home_team") or not r.get("away_team") or when is None:
        return None
    return RawGameResult(
        home_team=r["home_team"],
        away_team=r["away_team"],
        game_date_utc=when,
        status=str(r.get("status") or "scheduled"),
        external_game_id=str(r["game_id"]) if r.get("game_id") is not None else None,
        home_score=_num(r.get("home_score"), int),
        away_score=_num(r.get("away_score"), int),
    )


def parse_json(obj: Union[Dict, List], since_utc: Optional[int] = None, limit: Optional[int] = None) -> FetchResult:
    """
    解析后的 JSON 对象 -> FetchResult

    支持:
        [...]                          直接是新闻数组
        {"items": [...]} / {"data": [...]}
        {"odds": [...], "results": [...]} 可与新闻并存
    """
    if isinstance(obj, list):
        raw_items, raw_odds, raw_results = obj, [], []
    elif isinstance(obj, dict):
        raw_items = obj.get("items") or obj.get("data") or []
        raw_odds = obj.get("odds") or []
        raw_results = obj.get("results") or []
    else:
        raise ValueError(f"unexpected JSON payload type: {type(obj).__name__}")

    out = FetchResult()
    for it in raw_items:
        if not isinstance(it, dict):
            continue
        if limit and len(out.items) >= limit:
            out.has_more = True
            break
        news = _news(it)
        if news is None or (since_utc and news.published_at_utc < since_utc):
            continue
        out.items.append(news)

    out.odds = [o for o in (_odds(x) for x in raw_odds if isinstance(x, dict)) if o]
    out.results = [r for r in (_result(x) for x in raw_results if isinstance(x, dict)) if r]
    return out
