# -*- coding: utf-8 -*-
"""
web.py
外部 cron 的触发入口（FastAPI）：
  GET /cron/source-fetch   调度到期的数据源
  GET /cron/scheduler      调度到期的定时查询
  GET /cron/all            两个都跑
  GET /jobs/{job_id}       任务状态
鉴权：Authorization: Bearer <CRON_SECRET>；开发环境且没配 secret 时放行。
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .jobs import JobQueue
from .scheduler import schedule_due_queries, schedule_due_sources
from .storage import Store
from .utils import get_logger

log = get_logger("web")


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


def get_cfg(request: Request) -> Dict[str, Any]:
    return request.app.state.cfg


async def verify_cron_secret(
    request: Request,
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    cfg = request.app.state.cfg
    secret = cfg.get("web", {}).get("cron_secret") or ""
    if not secret and cfg.get("environment") == "development":
        return
    if not secret or authorization != f"Bearer {secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


StoreDep = Annotated[Store, Depends(get_store)]
QueueDep = Annotated[JobQueue, Depends(get_queue)]
CfgDep = Annotated[Dict[str, Any], Depends(get_cfg)]

CRON_TASKS = ("source-fetch", "scheduler", "all")


def create_app(store: Store, queue: JobQueue, cfg: Dict[str, Any]) -> FastAPI:
    app = FastAPI(title="clipscout", version="0.1.0")
    app.state.store = store
    app.state.queue = queue
    app.state.cfg = cfg

    @app.get("/cron/{name}", dependencies=[Depends(verify_cron_secret)])
    async def cron(name: str, store: StoreDep, queue: QueueDep, cfg: CfgDep):
        if name not in CRON_TASKS:
            raise HTTPException(status_code=404, detail=f"Unknown cron task: {name}")
        now = datetime.now(timezone.utc)
        tz = cfg.get("scheduler", {}).get("timezone", "UTC")
        try:
            processed = 0
            if name in ("source-fetch", "all"):
                processed += await schedule_due_sources(store, queue, tz=tz)
            if name in ("scheduler", "all"):
                processed += await schedule_due_queries(store, queue, tz=tz)
        except Exception as e:
            log.error("cron %s 出错: %s", name, e)
            return JSONResponse(status_code=500, content={"success": False, "error": str(e) or "Unknown error"})
        return {
            "success": True,
            "processedCount": processed,
            "timestamp": now.isoformat().replace("+00:00", "Z"),
        }

    @app.get("/jobs/{job_id}", dependencies=[Depends(verify_cron_secret)])
    async def job_status(job_id: str, queue: QueueDep):
        job = queue.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job.to_dict()

    @app.get("/health")
    async def health(queue: QueueDep):
        return {"status": "ok", "jobs": queue.counts()}

    return app
