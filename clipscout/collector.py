# -*- coding: utf-8 -*-
"""
collector.py
把适配器产出的原始数据写入库：
- 新闻：精确去重 -> 内容指纹去重（跳过并计数）-> 近似标题（默认只记日志）-> 幂等插入，插入后立刻回调
- 盘口 / 赛果：逐条 upsert，单条失败只记日志，不影响本轮新闻
- sync_sources：ops/sources.yml 里的源和定时查询写入库
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .adapters import get_adapter
from .config import OPS_DIR, load_yaml
from .dedup import check_content_duplicate, check_exact_duplicate, find_similar_headlines
from .models import (
    GameResult,
    NewsItem,
    OddsSnapshot,
    QueryDefinition,
    RawGameResult,
    RawNewsItem,
    RawOdds,
    ScheduleType,
    Source,
    SourceStatus,
    derive_outcome,
)
from .storage import Store, new_id
from .utils import get_logger, now_ms

log = get_logger("collector")


@dataclass
class IngestStats:
    items_fetched: int = 0
    new_items: int = 0
    duplicates_skipped: int = 0
    similar_flagged: int = 0
    created: List[NewsItem] = field(default_factory=list)


def _to_news_item(source: Source, raw: RawNewsItem) -> NewsItem:
    return NewsItem(
        id=new_id(),
        org_id=source.org_id,
        source_id=source.id,
        external_id=raw.external_id,
        type=raw.type,
        sport=source.sport,
        headline=raw.headline,
        content=raw.content,
        url=raw.url,
        image_url=raw.image_url,
        published_at_utc=raw.published_at_utc,
        author=raw.author,
    )


async def ingest_items(
    store: Store,
    source: Source,
    items: Sequence[RawNewsItem],
    skip_similar: bool = False,
    similarity_threshold: float = 0.7,
    headline_window_hours: int = 24,
    content_window_hours: int = 48,
    on_stored: Optional[Callable[[NewsItem], Awaitable[Any]]] = None,
) -> IngestStats:
    """
    逐条去重并入库。返回的 stats.created 只含本轮新建的条目。
    on_stored 在每条插入提交后立即调用（用于打分入队）；精确重复但还没打过分的条目也会再交给它，
    这样上一次中途失败时已入库的条目不会漏掉打分。
    """
    stats = IngestStats(items_fetched=len(items))
    for raw in items:
        existing = await check_exact_duplicate(store, source.org_id, source.id, raw.external_id)
        if existing is not None:
            stats.duplicates_skipped += 1
            if on_stored is not None and not existing.is_processed:
                await on_stored(existing)
            continue

        if await check_content_duplicate(store, source.org_id, raw.headline, raw.content,
                                         window_hours=content_window_hours):
            stats.duplicates_skipped += 1
            continue

        similar = await find_similar_headlines(store, source.org_id, raw.headline,
                                               window_hours=headline_window_hours,
                                               threshold=similarity_threshold)
        if similar:
            stats.similar_flagged += 1
            log.info("相似标题 %.0f%%: %r ~ %r", similar[0].similarity * 100,
                     raw.headline[:60], similar[0].item.headline[:60])
            if skip_similar:
                stats.duplicates_skipped += 1
                continue

        item, created = await store.insert_news_item(_to_news_item(source, raw))
        if created:
            stats.new_items += 1
            stats.created.append(item)
        else:
            # 并发的另一次拉取抢先插入了同一条
            stats.duplicates_skipped += 1
        if on_stored is not None and not item.is_processed:
            await on_stored(item)
    return stats


async def ingest_odds(store: Store, source: Source, odds: Sequence[RawOdds]) -> int:
    n = 0
    for o in odds:
        try:
            await store.upsert_odds(OddsSnapshot(
                id=new_id(),
                org_id=source.org_id,
                source_id=source.id,
                sport=source.sport,
                home_team=o.home_team,
                away_team=o.away_team,
                game_date_utc=o.game_date_utc,
                external_game_id=o.external_game_id,
                home_moneyline=o.home_moneyline,
                away_moneyline=o.away_moneyline,
                spread=o.spread,
                spread_juice=o.spread_juice,
                over_under=o.over_under,
                over_juice=o.over_juice,
                under_juice=o.under_juice,
            ))
            n += 1
        except Exception as e:
            log.warning("odds upsert 失败 %s @ %s: %s", o.away_team, o.home_team, e)
    return n


async def ingest_results(store: Store, source: Source, results: Sequence[RawGameResult]) -> int:
    n = 0
    for r in results:
        try:
            await store.upsert_game_result(GameResult(
                id=new_id(),
                org_id=source.org_id,
                source_id=source.id,
                sport=source.sport,
                home_team=r.home_team,
                away_team=r.away_team,
                game_date_utc=r.game_date_utc,
                external_game_id=r.external_game_id,
                home_score=r.home_score,
                away_score=r.away_score,
                status=r.status,
                outcome=derive_outcome(r.home_score, r.away_score, r.status),
            ))
            n += 1
        except Exception as e:
            log.warning("result upsert 失败 %s @ %s: %s", r.away_team, r.home_team, e)
    return n


def run_counters(stats: IngestStats, odds_upserted: int, results_upserted: int) -> Dict[str, int]:
    """fetch run 上要落库的计数字段"""
    return {
        "items_fetched": stats.items_fetched,
        "new_items": stats.new_items,
        "duplicates_skipped": stats.duplicates_skipped,
        "odds_upserted": odds_upserted,
        "results_upserted": results_upserted,
    }


# -------------------- ops/sources.yml -> 库 --------------------

def _source_from_cfg(d: Dict[str, Any], org_id: str) -> Source:
    return Source(
        id=str(d["id"]),
        org_id=str(d.get("org_id") or org_id),
        name=str(d.get("name") or d["id"]),
        type=str(d["type"]).upper(),
        sport=str(d.get("sport") or "NFL").upper(),
        config=d.get("config") or {},
        schedule_type=str(d.get("schedule_type") or ScheduleType.MANUAL.value).upper(),
        schedule_cron=d.get("schedule_cron"),
        refresh_interval_min=int(d.get("refresh_interval_min") or 60),
        is_scheduled=bool(d.get("is_scheduled", False)),
        status=str(d.get("status") or SourceStatus.ACTIVE.value).upper(),
    )


def _query_from_cfg(d: Dict[str, Any], org_id: str) -> QueryDefinition:
    return QueryDefinition(
        id=str(d["id"]),
        org_id=str(d.get("org_id") or org_id),
        name=str(d.get("name") or d["id"]),
        sport=d.get("sport"),
        schedule_type=str(d.get("schedule_type") or ScheduleType.MANUAL.value).upper(),
        schedule_cron=d.get("schedule_cron"),
        is_scheduled=bool(d.get("is_scheduled", False)),
        is_active=bool(d.get("is_active", True)),
        # 首次入库的定时查询立即到期
        next_run_at_utc=now_ms() if d.get("is_scheduled") else None,
    )


async def sync_sources(store: Store, path: Optional[Union[str, Path]] = None,
                       default_org: str = "default") -> Tuple[int, int]:
    """
    读取 ops/sources.yml，把 sources / queries 幂等写入库（运行态字段不动）。
    返回 (sources 数, queries 数)。
    """
    p = Path(path) if path else OPS_DIR / "sources.yml"
    try:
        data = load_yaml(p) or {}
    except FileNotFoundError:
        log.info("未找到 %s，跳过", p)
        return 0, 0

    org_id = str(data.get("org_id") or default_org)
    n_src = n_q = 0
    for d in data.get("sources") or []:
        adapter = get_adapter(str(d.get("type", "")).upper())
        if adapter is not None:
            problems = adapter.validate_config(d.get("config") or {})
            if problems:
                log.warning("source %s 配置有误: %s", d.get("id"), "; ".join(problems))
        elif d.get("type"):
            log.warning("source %s: 没有 %s 类型的适配器", d.get("id"), d.get("type"))
        await store.upsert_source(_source_from_cfg(d, org_id))
        n_src += 1
    for d in data.get("queries") or []:
        await store.upsert_query(_query_from_cfg(d, org_id))
        n_q += 1
    log.info("同步 %d 个源, %d 个查询", n_src, n_q)
    return n_src, n_q
