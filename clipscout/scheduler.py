# -*- coding: utf-8 -*-
"""
scheduler.py
每个 tick 扫一遍到期的 Source 和 Query：
  1) 已有 QUEUED/RUNNING 的 run -> 跳过（next 不动，下个 tick 再看）；
     队列里已经没有它的任务（进程重启丢了）时按原 id 重新入队
  2) 建一条 QUEUED run（部分唯一索引兜底，并发输家拿到 None 也跳过）
  3) 入队，job_id = run.id
  4) 写 next / last
单条出错只记日志，不影响其他条目。
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Dict, Optional

from apscheduler.triggers.cron import CronTrigger

from .errors import RecordNotFoundError
from .jobs import JobQueue, ScheduledQueryPayload, SourceFetchPayload
from .models import QueryRun, RunStatus, ScheduleType, SourceFetchRun, TriggeredBy
from .storage import Store, new_id
from .utils import DAY_MS, HOUR_MS, MINUTE_MS, dt_to_ms, get_logger, ms_to_dt, now_ms

log = get_logger("scheduler")

ORPHANED_MESSAGE = "requeued: job lost by restart"


def calculate_next_run(
    schedule_type: str,
    now_utc: int,
    refresh_interval_min: Optional[int] = 60,
    cron: Optional[str] = None,
    tz: str = "UTC",
) -> Optional[int]:
    """
    下次运行时间（UTC 毫秒）；MANUAL 返回 None。
    CUSTOM 用 APScheduler 的 CronTrigger 算，表达式不合法时退回 +1h。
    """
    st = str(schedule_type or ScheduleType.MANUAL.value).upper()
    if st == ScheduleType.MANUAL.value:
        return None
    if st == ScheduleType.HOURLY.value:
        return now_utc + int(refresh_interval_min or 60) * MINUTE_MS
    if st == ScheduleType.DAILY.value:
        return now_utc + DAY_MS
    if st == ScheduleType.WEEKDAYS.value:
        nxt = ms_to_dt(now_utc) + timedelta(days=1)
        while nxt.weekday() >= 5:  # 周六 / 周日
            nxt += timedelta(days=1)
        return dt_to_ms(nxt)
    if st == ScheduleType.WEEKLY.value:
        return now_utc + 7 * DAY_MS
    if st == ScheduleType.CUSTOM.value:
        if cron:
            try:
                trigger = CronTrigger.from_crontab(cron, timezone=tz or "UTC")
                # 触发时间含 now 本身，往后挪一秒避免同一时刻重复触发
                fire = trigger.get_next_fire_time(None, ms_to_dt(now_utc) + timedelta(seconds=1))
            except (ValueError, LookupError) as e:
                log.warning("cron 表达式无效 %r: %s，改为 1 小时后", cron, e)
                fire = None
            if fire is not None:
                return dt_to_ms(fire)
        return now_utc + HOUR_MS
    log.warning("未知的 schedule_type %r，改为 1 小时后", schedule_type)
    return now_utc + HOUR_MS


# ---------------- 手动 / 定时触发 ----------------

async def _requeue_fetch_run(store: Store, queue: JobQueue, run: SourceFetchRun, reason: str) -> None:
    """库里还挂着、队列里却没有对应任务的 run（进程重启丢了），按原 id 重新入队"""
    if run.status != RunStatus.QUEUED.value:
        await store.update_fetch_run(run.id, status=RunStatus.QUEUED.value, error_message=reason)
    await queue.enqueue(SourceFetchPayload(run.source_id, run.id, run.org_id, run.triggered_by), job_id=run.id)
    log.warning("fetch run %s 重新入队: %s", run.id, reason)


async def _requeue_query_run(store: Store, queue: JobQueue, run: QueryRun, reason: str) -> None:
    if run.status != RunStatus.QUEUED.value:
        await store.update_query_run(run.id, status=RunStatus.QUEUED.value, error_message=reason)
    await queue.enqueue(ScheduledQueryPayload(run.id, run.query_id, run.org_id, run.triggered_by), job_id=run.id)
    log.warning("query run %s 重新入队: %s", run.id, reason)


async def recover_orphaned_runs(store: Store, queue: JobQueue) -> int:
    """
    启动时调用：上次进程留下的 QUEUED/RUNNING run 在内存队列里已经没有任务了，
    不接回来的话同一个源 / 查询会一直被防重叠挡住。返回重新入队的数量。
    """
    n = 0
    for run in await store.list_active_fetch_runs():
        if queue.get_job(run.id) is None:
            await _requeue_fetch_run(store, queue, run, ORPHANED_MESSAGE)
            n += 1
    for qrun in await store.list_active_query_runs():
        if queue.get_job(qrun.id) is None:
            await _requeue_query_run(store, queue, qrun, ORPHANED_MESSAGE)
            n += 1
    if n:
        log.info("接回 %d 个上次未完成的 run", n)
    return n


async def trigger_source_fetch(
    store: Store,
    queue: JobQueue,
    source_id: str,
    triggered_by: str = TriggeredBy.MANUAL.value,
) -> Optional[SourceFetchRun]:
    """
    建 run 并入队；该源已有进行中的 run 时返回 None。
    进行中的 run 在队列里找不到任务时按原 id 重新入队并返回它。
    """
    source = await store.get_source(source_id)
    if source is None:
        raise RecordNotFoundError(f"source not found: {source_id}")
    active = await store.find_active_fetch_run(source.id)
    if active is not None:
        if queue.get_job(active.id) is None:
            await _requeue_fetch_run(store, queue, active, ORPHANED_MESSAGE)
            return active
        log.info("跳过 %s：已有进行中的拉取", source.name)
        return None
    run = await store.create_fetch_run(SourceFetchRun(
        id=new_id(), source_id=source.id, org_id=source.org_id, triggered_by=triggered_by,
    ))
    if run is None:
        log.info("跳过 %s：并发创建的 run 抢先了", source.name)
        return None
    await queue.enqueue(SourceFetchPayload(source.id, run.id, source.org_id, triggered_by), job_id=run.id)
    return run


async def trigger_query_run(
    store: Store,
    queue: JobQueue,
    query_id: str,
    triggered_by: str = TriggeredBy.MANUAL.value,
) -> Optional[QueryRun]:
    query = await store.get_query(query_id)
    if query is None:
        raise RecordNotFoundError(f"query not found: {query_id}")
    active = await store.find_active_query_run(query.id)
    if active is not None:
        if queue.get_job(active.id) is None:
            await _requeue_query_run(store, queue, active, ORPHANED_MESSAGE)
            return active
        log.info("跳过查询 %s：已有进行中的 run", query.name)
        return None
    run = await store.create_query_run(QueryRun(
        id=new_id(), org_id=query.org_id, query_id=query.id, triggered_by=triggered_by,
    ))
    if run is None:
        return None
    await queue.enqueue(ScheduledQueryPayload(run.id, query.id, query.org_id, triggered_by), job_id=run.id)
    return run


async def schedule_due_sources(store: Store, queue: JobQueue, now_utc: Optional[int] = None,
                               tz: str = "UTC") -> int:
    """返回本轮入队的数量"""
    now = now_ms() if now_utc is None else now_utc
    processed = 0
    for source in await store.list_due_sources(now):
        try:
            run = await trigger_source_fetch(store, queue, source.id, TriggeredBy.SCHEDULED.value)
            if run is None:
                continue
            nxt = calculate_next_run(source.schedule_type, now, source.refresh_interval_min,
                                     source.schedule_cron, tz)
            await store.set_source_schedule(source.id, nxt, now)
            processed += 1
        except Exception as e:
            log.error("调度 source %s 失败: %s", source.id, e)
    if processed:
        log.info("入队 %d 个拉取任务", processed)
    return processed


async def schedule_due_queries(store: Store, queue: JobQueue, now_utc: Optional[int] = None,
                               tz: str = "UTC") -> int:
    now = now_ms() if now_utc is None else now_utc
    processed = 0
    for query in await store.list_due_queries(now):
        try:
            run = await trigger_query_run(store, queue, query.id, TriggeredBy.SCHEDULED.value)
            if run is None:
                continue
            nxt = calculate_next_run(query.schedule_type, now, None, query.schedule_cron, tz)
            await store.set_query_schedule(query.id, nxt, now)
            processed += 1
        except Exception as e:
            log.error("调度查询 %s 失败: %s", query.id, e)
    if processed:
        log.info("入队 %d 个定时查询", processed)
    return processed


async def run_scheduler_tick(store: Store, queue: JobQueue, now_utc: Optional[int] = None,
                             tz: str = "UTC") -> Dict[str, int]:
    return {
        "sources": await schedule_due_sources(store, queue, now_utc, tz),
        "queries": await schedule_due_queries(store, queue, now_utc, tz),
    }


async def run_scheduler_loop(store: Store, queue: JobQueue, cfg: Dict[str, Any]) -> None:
    """按 scheduler.interval_sec 周期 tick；只有取消能让它退出"""
    sc = cfg.get("scheduler", {})
    interval = float(sc.get("interval_sec", 60))
    tz = sc.get("timezone", "UTC")
    log.info("调度器启动，每 %.0fs 一次", interval)
    try:
        while True:
            try:
                await run_scheduler_tick(store, queue, tz=tz)
            except Exception as e:
                log.error("tick 出错: %s", e)
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        log.info("调度器退出")
        raise
