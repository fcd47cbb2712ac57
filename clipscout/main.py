# clipscout/main.py
# 串起：sources.yml -> 任务队列(fetch -> score -> pair) -> 调度器 -> housekeeper -> 触发接口
# 用法：python -m clipscout.main [--run-seconds N] [--no-web]

from __future__ import annotations

import argparse
import asyncio
from typing import Any, Dict, List, Optional

import uvicorn

from .adapters import close_client
from .collector import sync_sources
from .config import load_cfg
from .dedup import merge_duplicates
from .jobs import JobQueue
from .pipeline import Pipeline
from .scheduler import recover_orphaned_runs, run_scheduler_loop
from .storage import Store, init_db
from .utils import get_logger, setup_logging
from .web import create_app

log = get_logger("main")


async def run_housekeeper(store: Store, queue: JobQueue, cfg: Dict[str, Any]) -> None:
    """
    定期按保留策略清理已结束的任务；打开 dedup.merge_every_sec 时顺带合并重复新闻。
    """
    every_sec = int(cfg.get("housekeeper", {}).get("every_sec", 600))
    dd = cfg.get("dedup", {})
    merge_every = int(dd.get("merge_every_sec", 0))
    last_merge = 0.0
    loop = asyncio.get_running_loop()
    log.info("housekeeper started")
    try:
        while True:
            try:
                dropped = queue.prune()
                if dropped:
                    log.info("清理 %d 个已结束任务", dropped)
                if merge_every > 0 and loop.time() - last_merge >= merge_every:
                    last_merge = loop.time()
                    orgs = {s.org_id for s in await store.list_sources()}
                    for org_id in sorted(orgs):
                        res = await merge_duplicates(store, org_id, dry_run=bool(dd.get("merge_dry_run", True)))
                        if res["duplicate_groups"]:
                            log.info("org=%s 重复组 %d, 可合并 %d 条", org_id,
                                     res["duplicate_groups"], res["items_merged"])
            except Exception as e:
                log.error("housekeeper error: %s", e)
            await asyncio.sleep(min(every_sec, merge_every) if merge_every > 0 else every_sec)
    except asyncio.CancelledError:
        log.info("housekeeper cancelled")
        raise


async def run_web(store: Store, queue: JobQueue, cfg: Dict[str, Any]) -> None:
    web = cfg.get("web", {})
    app = create_app(store, queue, cfg)
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=web.get("host", "127.0.0.1"),
        port=int(web.get("port", 8080)),
        log_level=str(cfg.get("logging", {}).get("level", "INFO")).lower(),
    ))
    # 信号交给 main 统一处理
    server.install_signal_handlers = lambda: None
    log.info("web listening on %s:%s", web.get("host"), web.get("port"))
    await server.serve()


async def main(run_seconds: int = 0, with_web: bool = True, cfg_path: Optional[str] = None) -> None:
    cfg = load_cfg(cfg_path)
    setup_logging(cfg.get("logging", {}).get("level", "INFO"))

    store = await init_db(cfg["database"]["path"])
    await sync_sources(store)

    queue = JobQueue.from_cfg(cfg)
    Pipeline(store, queue, cfg).register()
    await queue.start()
    # 上次退出时没跑完的 run 接回队列，否则会一直挡住同源的新 run
    await recover_orphaned_runs(store, queue)

    tasks: List[asyncio.Task] = []
    log.info("creating tasks…")
    if cfg.get("scheduler", {}).get("enabled", True):
        tasks.append(asyncio.create_task(run_scheduler_loop(store, queue, cfg), name="scheduler"))
    tasks.append(asyncio.create_task(run_housekeeper(store, queue, cfg), name="housekeeper"))
    if with_web and cfg.get("web", {}).get("enabled", True):
        tasks.append(asyncio.create_task(run_web(store, queue, cfg), name="web"))

    log.info("running for %s", f"{run_seconds}s" if run_seconds and run_seconds > 0 else "ever")
    try:
        if run_seconds and run_seconds > 0:
            await asyncio.sleep(run_seconds)
        else:
            # 0 或负数 => 常驻
            await asyncio.Event().wait()
    except asyncio.CancelledError:
        log.info("cancelled")
        raise
    finally:
        # 优雅退出
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await queue.stop()
        await close_client()
        await store.close()
        log.info("finished")


def cli() -> None:
    parser = argparse.ArgumentParser(prog="clipscout")
    parser.add_argument("--run-seconds", type=int, default=0, help="运行多少秒后退出；0 = 常驻")
    parser.add_argument("--no-web", action="store_true", help="不启动触发接口")
    parser.add_argument("--config", default=None, help="配置文件路径，默认 ops/config.yml")
    args = parser.parse_args()
    try:
        asyncio.run(main(run_seconds=args.run_seconds, with_web=not args.no_web, cfg_path=args.config))
    except KeyboardInterrupt:
        log.info("interrupted")


if __name__ == "__main__":
    cli()
