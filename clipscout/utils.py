# 工具模块：时间换算、日志、分号字段、FNV 哈希

import logging
import sys
import time
from datetime import datetime, timezone
from typing import Iterable, List, Optional

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


def now_ms() -> int:
    """
    获取当前时间的UTC毫秒时间戳
    """
    return int(time.time() * 1000)


def ms_to_dt(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def dt_to_ms(dt: datetime) -> int:
    # naive datetime 一律按 UTC 处理
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def parse_iso_ms(value: Optional[str]) -> Optional[int]:
    """ISO 时间字符串 -> UTC毫秒；解析失败返回 None"""
    if not value:
        return None
    try:
        return dt_to_ms(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


# ---------- 多值字段（分号分隔，与库表一致） ----------

def join_multi(values: Optional[Iterable[str]]) -> str:
    if not values:
        return ""
    return ";".join(v for v in values if v)


def split_multi(s: Optional[str]) -> List[str]:
    if not s:
        return []
    return [v for v in s.split(";") if v]


# ---------- 哈希 ----------

_B36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))


def fnv1a_32(text: str) -> int:
    """
    32 位 FNV-1a，按 UTF-16 code unit 逐个异或（与浏览器端 charCodeAt 结果一致）
    """
    h = 2166136261
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * 16777619) & 0xFFFFFFFF
    return h


# ---------- 日志工具 ----------

_LOG_FORMAT = "[%(name)s] %(message)s"
_configured = False


def setup_logging(level: str = "INFO", fmt: str = _LOG_FORMAT) -> None:
    """给 clipscout.* logger 装一个 stdout handler；重复调用只改级别"""
    global _configured
    root = logging.getLogger("clipscout")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt))
    root.addHandler(handler)
    root.propagate = False
    _configured = True


class _ShortNameFilter(logging.Filter):
    # 输出里只保留组件名，如 [scorer]
    def filter(self, record: logging.LogRecord) -> bool:
        record.name = record.name.rsplit(".", 1)[-1]
        return True


def get_logger(component: str) -> logging.Logger:
    log = logging.getLogger(f"clipscout.{component}")
    if not any(isinstance(f, _ShortNameFilter) for f in log.filters):
        log.addFilter(_ShortNameFilter())
    return log
