# -*- coding: utf-8 -*-
"""
pipeline.py
各类任务的 handler：拉取 -> 打分 -> 配对，外加定时查询与导出。
阶段之间靠“提交后再入队”衔接：本阶段的事务提交之后才把下一阶段的任务放进队列。

  source-fetch      适配器拉取 + 去重入库；每条新新闻入队 importance-score
  importance-score  实体抽取 + 打分；分数达标入队 clip-pair
  clip-pair         找视频片段并写 ClipMatch
  scheduled-query   交给 QueryRunner（视频检索在外部）
  export            交给 Exporter
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol

from .adapters import SourceAdapter, get_adapter_or_raise
from .clip_pairer import ClipFinder, RuleBasedClipFinder, save_clip_matches
from .collector import ingest_items, ingest_odds, ingest_results, run_counters
from .entities import EntityExtractor, default_extractor
from .errors import FatalJobError, RecordNotFoundError
from .jobs import (
    ClipPairPayload,
    ExportPayload,
    ImportanceScorePayload,
    Job,
    JobKind,
    JobQueue,
    ScheduledQueryPayload,
    SourceFetchPayload,
)
from .models import ACTIVE_RUN_STATUSES, NewsItem, QueryDefinition, QueryRun, RunStatus, SourceStatus
from .scorer import ImportanceScorer, UpcomingGame
from .storage import Store
from .utils import DAY_MS, get_logger, now_ms

log = get_logger("pipeline")


class QueryRunner(Protocol):
    async def run(self, query: QueryDefinition, run: QueryRun) -> Any:
        ...


class Exporter(Protocol):
    async def export(self, payload: ExportPayload) -> Any:
        ...


def _err(e: BaseException) -> str:
    return str(e) or e.__class__.__name__


class Pipeline:
    def __init__(
        self,
        store: Store,
        queue: JobQueue,
        cfg: Optional[Dict[str, Any]] = None,
        extractor: Optional[EntityExtractor] = None,
        scorer: Optional[ImportanceScorer] = None,
        clip_finder: Optional[ClipFinder] = None,
        query_runner: Optional[QueryRunner] = None,
        exporter: Optional[Exporter] = None,
        adapter_lookup: Callable[[str], SourceAdapter] = get_adapter_or_raise,
        clock: Callable[[], int] = now_ms,
    ):
        cfg = cfg or {}
        self.store = store
        self.queue = queue
        self.ingest_cfg = cfg.get("ingest", {})
        self.scoring_cfg = cfg.get("scoring", {})
        self.dedup_cfg = cfg.get("dedup", {})
        pairing = cfg.get("clip_pairing", {})

        self.extractor = extractor or default_extractor()
        self.scorer = scorer or ImportanceScorer()
        self.clip_finder = clip_finder or RuleBasedClipFinder(
            store,
            window_days=int(pairing.get("window_days", 7)),
            candidate_limit=int(pairing.get("candidate_limit", 100)),
            min_score=float(pairing.get("min_score", 0.3)),
            max_results=int(pairing.get("max_results", 5)),
        )
        self.query_runner = query_runner
        self.exporter = exporter
        self.adapter_lookup = adapter_lookup
        self.clock = clock

        self.handlers = {
            JobKind.SOURCE_FETCH: self.handle_source_fetch,
            JobKind.IMPORTANCE_SCORE: self.handle_importance_score,
            JobKind.CLIP_PAIR: self.handle_clip_pair,
            JobKind.SCHEDULED_QUERY: self.handle_scheduled_query,
            JobKind.EXPORT: self.handle_export,
        }

    def register(self) -> None:
        for kind, handler in self.handlers.items():
            self.queue.register(kind, handler)

    # ---------------- source-fetch ----------------

    async def handle_source_fetch(self, payload: SourceFetchPayload, job: Job) -> Dict[str, Any]:
        run = await self.store.get_fetch_run(payload.fetch_run_id)
        if run is None:
            raise RecordNotFoundError(f"fetch run not found: {payload.fetch_run_id}")
        if run.status not in ACTIVE_RUN_STATUSES:
            # 重复投递：这次 run 已经结束
            return {"skipped": True, "status": run.status}

        source = await self.store.get_source(payload.source_id)
        if source is None:
            await self.store.update_fetch_run(run.id, status=RunStatus.FAILED.value,
                                              error_message="Source not found",
                                              finished_at_utc=self.clock())
            raise RecordNotFoundError(f"source not found: {payload.source_id}")
        if source.status != SourceStatus.ACTIVE.value:
            await self.store.update_fetch_run(run.id, status=RunStatus.SKIPPED.value,
                                              error_message="Source is paused",
                                              finished_at_utc=self.clock())
            log.info("跳过已暂停的源 %s", source.name)
            return {"skipped": True, "status": RunStatus.SKIPPED.value}

        started = self.clock()
        await self.store.update_fetch_run(run.id, status=RunStatus.RUNNING.value,
                                          started_at_utc=started, error_message=None)
        try:
            adapter = self.adapter_lookup(source.type)
            lookback = int(self.ingest_cfg.get("default_lookback_days", 7)) * DAY_MS
            since = source.last_fetch_at_utc or started - lookback
            result = await adapter.fetch(source, since, int(self.ingest_cfg.get("fetch_limit", 100)))

            stats = await ingest_items(
                self.store, source, result.items,
                skip_similar=bool(self.ingest_cfg.get("skip_similar_headlines", False)),
                similarity_threshold=float(self.dedup_cfg.get("similarity_threshold", 0.7)),
                headline_window_hours=int(self.dedup_cfg.get("headline_window_hours", 24)),
                content_window_hours=int(self.dedup_cfg.get("content_window_hours", 48)),
                # 每条插入单独提交，提交后立刻交给打分
                on_stored=self._enqueue_score,
            )
            odds_n = await ingest_odds(self.store, source, result.odds)
            results_n = await ingest_results(self.store, source, result.results)

            finished = self.clock()
            counters = run_counters(stats, odds_n, results_n)
            async with self.store.transaction():
                await self.store.record_source_success(source.id, finished)
                await self.store.update_fetch_run(run.id, status=RunStatus.SUCCEEDED.value,
                                                  finished_at_utc=finished, error_message=None,
                                                  **counters)
        except FatalJobError as e:
            await self._fail_fetch(run.id, source.id, e, final=True)
            raise
        except Exception as e:
            await self._fail_fetch(run.id, source.id, e, final=job.is_final_attempt)
            raise

        log.info("%s 完成: fetched=%d new=%d dup=%d odds=%d results=%d",
                 source.name, stats.items_fetched, stats.new_items, stats.duplicates_skipped, odds_n, results_n)
        return counters

    async def _enqueue_score(self, item: NewsItem) -> None:
        # job_id 固定，同一条重复交过来不会多打一次分
        await self.queue.enqueue(ImportanceScorePayload(item.id, item.org_id), job_id=f"score:{item.id}")

    async def _fail_fetch(self, run_id: str, source_id: str, e: BaseException, final: bool) -> None:
        """
        记到 source 和 run 上。还会重试的 run 留在 QUEUED，守住同源不重叠；最后一次才 FAILED。
        """
        at = self.clock()
        msg = _err(e)
        log.warning("source %s 拉取失败 (final=%s): %s", source_id, final, msg)
        async with self.store.transaction():
            await self.store.record_source_error(source_id, at, msg)
            if final:
                await self.store.update_fetch_run(run_id, status=RunStatus.FAILED.value,
                                                  error_message=msg, finished_at_utc=at)
            else:
                await self.store.update_fetch_run(run_id, status=RunStatus.QUEUED.value, error_message=msg)

    # ---------------- importance-score ----------------

    async def _upcoming_games(self, org_id: str, sport: str, now: int) -> List[UpcomingGame]:
        days = int(self.scoring_cfg.get("upcoming_game_days", 7))
        odds = await self.store.list_upcoming_games(org_id, sport, now, now + days * DAY_MS)
        return [UpcomingGame([o.home_team, o.away_team], o.game_date_utc) for o in odds]

    async def handle_importance_score(self, payload: ImportanceScorePayload, job: Job) -> Dict[str, Any]:
        item = await self.store.get_news_item(payload.news_item_id)
        if item is None:
            raise RecordNotFoundError(f"news item not found: {payload.news_item_id}")

        now = self.clock()
        source = await self.store.get_source(item.source_id)
        games = await self._upcoming_games(item.org_id, item.sport, now)

        entities = self.extractor.extract(item.headline, item.content, item.sport)
        item.teams, item.players, item.topics = entities.teams, entities.players, entities.topics
        result = self.scorer.score(item, source.name if source else None, games, now)

        async with self.store.transaction():
            await self.store.save_news_score(
                item.id,
                teams=entities.teams,
                players=entities.players,
                topics=entities.topics,
                importance_score=result.total_score,
                score_breakdown=result.breakdown,
                score_reasoning=result.reasoning,
                scored_at_utc=now,
            )

        # 提交之后再交给配对
        threshold = int(self.scoring_cfg.get("clip_pair_min_score", 40))
        paired = result.total_score >= threshold
        if paired:
            await self.queue.enqueue(ClipPairPayload(item.id, item.org_id), job_id=f"pair:{item.id}")
        log.debug("scored %s = %d (%s)", item.id, result.total_score, result.reasoning)
        return {"score": result.total_score, "queued_for_pairing": paired}

    # ---------------- clip-pair ----------------

    async def handle_clip_pair(self, payload: ClipPairPayload, job: Job) -> Dict[str, Any]:
        item = await self.store.get_news_item(payload.news_item_id)
        if item is None:
            raise RecordNotFoundError(f"news item not found: {payload.news_item_id}")
        matches = await self.clip_finder.find_clips_for_news(item)
        saved = await save_clip_matches(self.store, item.org_id, item.id, matches)
        if saved:
            log.info("%s 配到 %d 个片段", item.headline[:60], saved)
        return {"matches": saved}

    # ---------------- scheduled-query ----------------

    async def handle_scheduled_query(self, payload: ScheduledQueryPayload, job: Job) -> Any:
        run = await self.store.get_query_run(payload.query_run_id)
        if run is None:
            raise RecordNotFoundError(f"query run not found: {payload.query_run_id}")
        if run.status not in ACTIVE_RUN_STATUSES:
            return {"skipped": True, "status": run.status}

        query = await self.store.get_query(payload.query_id)
        if query is None or self.query_runner is None:
            e = RecordNotFoundError(f"query not found: {payload.query_id}") if query is None \
                else FatalJobError("no query runner configured")
            await self.store.update_query_run(run.id, status=RunStatus.FAILED.value,
                                              error_message=str(e), finished_at_utc=self.clock())
            raise e

        await self.store.update_query_run(run.id, status=RunStatus.RUNNING.value, started_at_utc=self.clock())
        try:
            out = await self.query_runner.run(query, run)
        except Exception as e:
            final = isinstance(e, FatalJobError) or job.is_final_attempt
            values: Dict[str, Any] = {"error_message": _err(e)}
            if final:
                values.update(status=RunStatus.FAILED.value, finished_at_utc=self.clock())
            else:
                values["status"] = RunStatus.QUEUED.value
            await self.store.update_query_run(run.id, **values)
            raise
        await self.store.update_query_run(run.id, status=RunStatus.SUCCEEDED.value,
                                          finished_at_utc=self.clock(), error_message=None)
        return out

    # ---------------- export ----------------

    async def handle_export(self, payload: ExportPayload, job: Job) -> Any:
        if self.exporter is None:
            raise FatalJobError("no exporter configured")
        return await self.exporter.export(payload)
