# -*- coding: utf-8 -*-
"""
config.py
ops/config.yml 可选；不存在就用默认。
与 DEFAULT_CFG 递归合并，再叠加环境变量。
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .utils import get_logger

log = get_logger("config")

ROOT = Path(__file__).resolve().parents[1]
OPS_DIR = ROOT / "ops"

DEFAULT_CFG: Dict[str, Any] = {
    "environment": "production",
    "database": {
        "path": str(ROOT / "clipscout.db"),
    },
    "queue": {
        "attempts": 3,
        "backoff_sec": 5,
        "default_concurrency": 5,
        "concurrency": {
            "source-fetch": 3,
            "importance-score": 5,
            "clip-pair": 3,
            "scheduled-query": 2,
            "export": 1,
        },
        # 成功任务保留 24h 或最近 1000 条；失败任务保留 7 天
        "keep_completed_hours": 24,
        "keep_completed_count": 1000,
        "keep_failed_hours": 24 * 7,
    },
    "scheduler": {
        "enabled": True,
        "interval_sec": 60,
        "timezone": "UTC",
    },
    "ingest": {
        "fetch_limit": 100,
        "default_lookback_days": 7,
        # 近似标题只记日志；打开后直接跳过
        "skip_similar_headlines": False,
    },
    "scoring": {
        "clip_pair_min_score": 40,
        "upcoming_game_days": 7,
    },
    "clip_pairing": {
        "window_days": 7,
        "candidate_limit": 100,
        "min_score": 0.3,
        "max_results": 5,
    },
    "dedup": {
        "similarity_threshold": 0.7,
        "headline_window_hours": 24,
        "content_window_hours": 48,
        "merge_every_sec": 0,      # 0 = 关闭定期合并
        "merge_dry_run": True,
    },
    "web": {
        "enabled": True,
        "host": "127.0.0.1",
        "port": 8080,
        "cron_secret": "",
    },
    "logging": {
        "level": "INFO",
    },
    "housekeeper": {
        "every_sec": 600,
    },
}


def _merge(base: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (data or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    if os.environ.get("CLIPSCOUT_DB_PATH"):
        cfg["database"]["path"] = os.environ["CLIPSCOUT_DB_PATH"]
    if os.environ.get("CRON_SECRET"):
        cfg["web"]["cron_secret"] = os.environ["CRON_SECRET"]
    if os.environ.get("CLIPSCOUT_ENV"):
        cfg["environment"] = os.environ["CLIPSCOUT_ENV"]
    if os.environ.get("CLIPSCOUT_LOG_LEVEL"):
        cfg["logging"]["level"] = os.environ["CLIPSCOUT_LOG_LEVEL"]
    return cfg


def load_cfg(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """读取配置；文件坏了打日志并回退默认"""
    cfg_path = Path(path) if path else OPS_DIR / "config.yml"
    data: Dict[str, Any] = {}
    if cfg_path.exists():
        try:
            data = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            log.warning("读取 %s 失败，使用默认。err=%s", cfg_path, e)
            data = {}
    cfg = _apply_env(_merge(DEFAULT_CFG, data))
    # 相对路径按项目根目录解析
    db_path = str(cfg["database"]["path"])
    if db_path != ":memory:" and not Path(db_path).is_absolute():
        cfg["database"]["path"] = str(ROOT / db_path)
    return cfg


def load_yaml(path: Union[str, Path]) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)
