# -*- coding: utf-8 -*-
"""
jobs.py
进程内任务队列：每个任务类型一个 asyncio.Queue + N 个 worker。
- 失败重试：第 n 次失败后等待 backoff_sec * 2**(n-1) 秒再入队，最多 attempts 次
- FatalJobError：不重试，直接 FAILED
- 保留策略：成功的留 24h 且最多 1000 条，失败的留 7 天
- enqueue 可以指定 job_id；同 id 的任务还没结束时直接返回已有任务
交付语义是 at-least-once，handler 自己保证幂等。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Set, Tuple, Union

from .errors import ConfigurationError, FatalJobError
from .utils import HOUR_MS, get_logger, now_ms

log = get_logger("jobs")


class JobKind(str, Enum):
    SOURCE_FETCH = "source-fetch"
    IMPORTANCE_SCORE = "importance-score"
    CLIP_PAIR = "clip-pair"
    SCHEDULED_QUERY = "scheduled-query"
    EXPORT = "export"


class JobState(str, Enum):
    QUEUED = "QUEUED"
    DELAYED = "DELAYED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


TERMINAL_STATES = (JobState.SUCCEEDED, JobState.FAILED)


# ---------- 任务载荷（带 kind 的 tagged union） ----------

@dataclass(frozen=True)
class SourceFetchPayload:
    kind: ClassVar[JobKind] = JobKind.SOURCE_FETCH
    source_id: str
    fetch_run_id: str
    org_id: str
    triggered_by: str = "SCHEDULED"


@dataclass(frozen=True)
class ImportanceScorePayload:
    kind: ClassVar[JobKind] = JobKind.IMPORTANCE_SCORE
    news_item_id: str
    org_id: str


@dataclass(frozen=True)
class ClipPairPayload:
    kind: ClassVar[JobKind] = JobKind.CLIP_PAIR
    news_item_id: str
    org_id: str


@dataclass(frozen=True)
class ScheduledQueryPayload:
    kind: ClassVar[JobKind] = JobKind.SCHEDULED_QUERY
    query_run_id: str
    query_id: str
    org_id: str
    triggered_by: str = "SCHEDULED"


@dataclass(frozen=True)
class ExportPayload:
    kind: ClassVar[JobKind] = JobKind.EXPORT
    export_job_id: str
    org_id: str
    candidate_ids: Tuple[str, ...] = ()
    format: str = "csv"


JobPayload = Union[
    SourceFetchPayload,
    ImportanceScorePayload,
    ClipPairPayload,
    ScheduledQueryPayload,
    ExportPayload,
]


@dataclass
class Job:
    id: str
    kind: JobKind
    payload: JobPayload
    state: JobState = JobState.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    result: Any = None
    failed_reason: Optional[str] = None
    created_at_utc: int = 0
    run_at_utc: int = 0
    finished_at_utc: Optional[int] = None

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "state": self.state.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "failed_reason": self.failed_reason,
            "result": self.result,
            "created_at_utc": self.created_at_utc,
            "finished_at_utc": self.finished_at_utc,
        }


Handler = Callable[[Any, Job], Awaitable[Any]]


class JobQueue:
    def __init__(
        self,
        attempts: int = 3,
        backoff_sec: float = 5.0,
        concurrency: Optional[Dict[str, int]] = None,
        default_concurrency: int = 5,
        keep_completed_hours: float = 24,
        keep_completed_count: int = 1000,
        keep_failed_hours: float = 24 * 7,
        clock: Callable[[], int] = now_ms,
    ):
        self.attempts = attempts
        self.backoff_sec = backoff_sec
        self.concurrency = {JobKind(k): int(v) for k, v in (concurrency or {}).items()}
        self.default_concurrency = default_concurrency
        self.keep_completed_ms = int(keep_completed_hours * HOUR_MS)
        self.keep_completed_count = keep_completed_count
        self.keep_failed_ms = int(keep_failed_hours * HOUR_MS)
        self.clock = clock

        self._handlers: Dict[JobKind, Handler] = {}
        self._queues: Dict[JobKind, asyncio.Queue] = {}
        self._jobs: Dict[str, Job] = {}
        self._workers: List[asyncio.Task] = []
        self._timers: Set[asyncio.Task] = set()
        self._pending = 0
        self._idle: Optional[asyncio.Event] = None
        self._seq = 0

    @classmethod
    def from_cfg(cls, cfg: Dict[str, Any], **kw: Any) -> "JobQueue":
        q = cfg.get("queue", cfg)
        return cls(
            attempts=int(q.get("attempts", 3)),
            backoff_sec=float(q.get("backoff_sec", 5)),
            concurrency=q.get("concurrency") or {},
            default_concurrency=int(q.get("default_concurrency", 5)),
            keep_completed_hours=float(q.get("keep_completed_hours", 24)),
            keep_completed_count=int(q.get("keep_completed_count", 1000)),
            keep_failed_hours=float(q.get("keep_failed_hours", 24 * 7)),
            **kw,
        )

    # ---------- 注册 / 启停 ----------

    def register(self, kind: JobKind, handler: Handler) -> None:
        self._handlers[JobKind(kind)] = handler

    def _queue(self, kind: JobKind) -> asyncio.Queue:
        if kind not in self._queues:
            self._queues[kind] = asyncio.Queue()
        return self._queues[kind]

    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            if self._pending == 0:
                self._idle.set()
        return self._idle

    async def start(self) -> None:
        missing = [k.value for k in JobKind if k not in self._handlers]
        if missing:
            raise ConfigurationError(f"no handler registered for job kinds: {missing}")
        for kind in JobKind:
            n = self.concurrency.get(kind, self.default_concurrency)
            for i in range(max(1, n)):
                self._workers.append(asyncio.create_task(self._worker(kind, i), name=f"{kind.value}-{i}"))
        log.info("started %d workers", len(self._workers))

    async def stop(self) -> None:
        tasks = [*self._workers, *self._timers]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._timers.clear()
        log.info("stopped")

    # ---------- 入队 / 查询 ----------

    async def enqueue(self, payload: JobPayload, job_id: Optional[str] = None, delay_sec: float = 0) -> Job:
        kind = payload.kind
        if job_id is None:
            self._seq += 1
            job_id = f"{kind.value}:{self.clock()}:{self._seq}"
        existing = self._jobs.get(job_id)
        if existing is not None and existing.state not in TERMINAL_STATES:
            return existing

        now = self.clock()
        job = Job(id=job_id, kind=kind, payload=payload, max_attempts=self.attempts,
                  created_at_utc=now, run_at_utc=now + int(delay_sec * 1000))
        self._jobs[job_id] = job
        self._pending += 1
        self._idle_event().clear()
        if delay_sec > 0:
            job.state = JobState.DELAYED
            self._later(job, delay_sec)
        else:
            self._queue(kind).put_nowait(job.id)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in JobState}
        for j in self._jobs.values():
            out[j.state.value] += 1
        return out

    async def drain(self, timeout: Optional[float] = None) -> None:
        """等到没有未结束的任务（含退避中的）"""
        await asyncio.wait_for(self._idle_event().wait(), timeout)

    # ---------- 执行 ----------

    def _later(self, job: Job, delay_sec: float) -> None:
        async def _requeue() -> None:
            await asyncio.sleep(delay_sec)
            if job.state == JobState.DELAYED:
                job.state = JobState.QUEUED
                self._queue(job.kind).put_nowait(job.id)

        t = asyncio.create_task(_requeue())
        self._timers.add(t)
        t.add_done_callback(self._timers.discard)

    async def _worker(self, kind: JobKind, n: int) -> None:
        q = self._queue(kind)
        try:
            while True:
                job_id = await q.get()
                try:
                    await self._run(job_id)
                finally:
                    q.task_done()
        except asyncio.CancelledError:
            log.debug("%s-%d cancelled", kind.value, n)
            raise

    async def _run(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.state != JobState.QUEUED:
            return
        handler = self._handlers.get(job.kind)
        job.state = JobState.RUNNING
        job.attempts += 1
        try:
            if handler is None:
                raise FatalJobError(f"no handler for {job.kind.value}")
            job.result = await handler(job.payload, job)
        except asyncio.CancelledError:
            raise
        except FatalJobError as e:
            log.error("%s %s fatal: %s", job.kind.value, job.id, e)
            self._finish(job, JobState.FAILED, str(e))
        except Exception as e:
            job.failed_reason = str(e) or e.__class__.__name__
            if job.is_final_attempt:
                log.error("%s %s failed after %d attempts: %s", job.kind.value, job.id, job.attempts, e)
                self._finish(job, JobState.FAILED, job.failed_reason)
            else:
                delay = self.backoff_sec * 2 ** (job.attempts - 1)
                log.warning("%s %s attempt %d failed, retry in %.1fs: %s",
                            job.kind.value, job.id, job.attempts, delay, e)
                job.state = JobState.DELAYED
                job.run_at_utc = self.clock() + int(delay * 1000)
                self._later(job, delay)
        else:
            self._finish(job, JobState.SUCCEEDED, None)

    def _finish(self, job: Job, state: JobState, reason: Optional[str]) -> None:
        job.state = state
        job.failed_reason = reason
        job.finished_at_utc = self.clock()
        self._pending -= 1
        self.prune()
        if self._pending == 0:
            self._idle_event().set()

    def prune(self) -> int:
        """按保留策略清理已结束的任务，返回清掉的条数"""
        now = self.clock()
        drop: List[str] = []
        done = [j for j in self._jobs.values() if j.state == JobState.SUCCEEDED]
        done.sort(key=lambda j: j.finished_at_utc or 0, reverse=True)
        for i, j in enumerate(done):
            if i >= self.keep_completed_count or now - (j.finished_at_utc or 0) > self.keep_completed_ms:
                drop.append(j.id)
        for j in self._jobs.values():
            if j.state == JobState.FAILED and now - (j.finished_at_utc or 0) > self.keep_failed_ms:
                drop.append(j.id)
        for jid in drop:
            del self._jobs[jid]
        return len(drop)
