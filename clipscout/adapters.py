# -*- coding: utf-8 -*-
"""
adapters.py
数据源适配器：按 Source.type 查表，fetch(source, since, limit) -> FetchResult
- RSS_FEED   httpx 拉取 + feedparser 解析
- JSON_FEED  httpx 拉取 JSON（新闻 / 盘口 / 赛果）
- DUMMY      本地生成，不联网
网络错误、解析错误统一抛 AdapterError（可重试）；配置缺失抛 ConfigurationError（不重试）。
"""

from __future__ import annotations

from typing import Dict, List, Optional

import httpx

from .errors import AdapterError, AdapterNotFoundError, ConfigurationError
from .models import FetchResult, Source
from .parsers.dummy_gen import generate
from .parsers.json_default import parse_json
from .parsers.rss_default import parse_rss
from .utils import get_logger

log = get_logger("collector")

_CLIENT: Optional[httpx.AsyncClient] = None


def _ensure_client() -> httpx.AsyncClient:
    """全局复用一个 httpx AsyncClient，避免频繁建连。"""
    global _CLIENT
    if _CLIENT is None or _CLIENT.is_closed:
        _CLIENT = httpx.AsyncClient(
            timeout=30.0,
            follow_redirects=True,
            headers={
                "User-Agent": "clipscout/1.0",
                "Accept": "application/rss+xml, application/atom+xml, application/xml, application/json, */*",
            },
        )
    return _CLIENT


async def close_client() -> None:
    global _CLIENT
    if _CLIENT is not None:
        await _CLIENT.aclose()
        _CLIENT = None


class SourceAdapter:
    type: str = ""
    name: str = ""

    async def fetch(self, source: Source, since_utc: Optional[int] = None, limit: int = 100) -> FetchResult:
        raise NotImplementedError

    def validate_config(self, config: Dict) -> List[str]:
        """返回错误列表；空列表表示配置可用"""
        return []

    def _require(self, source: Source, key: str) -> str:
        value = (source.config or {}).get(key)
        if not value or not isinstance(value, str):
            raise ConfigurationError(f"source {source.id}: config.{key} is required")
        return value


class HttpAdapter(SourceAdapter):
    """带 client 注入的 HTTP 适配器基类（测试里可以塞 MockTransport）"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or _ensure_client()

    async def _get(self, url: str) -> httpx.Response:
        try:
            resp = await self.client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise AdapterError(f"{self.name} fetch failed: {e}") from e
        return resp


class RssAdapter(HttpAdapter):
    type = "RSS_FEED"
    name = "RSS Feed"

    async def fetch(self, source: Source, since_utc: Optional[int] = None, limit: int = 100) -> FetchResult:
        url = self._require(source, "feed_url")
        max_items = (source.config or {}).get("max_items")
        resp = await self._get(url)
        try:
            items = parse_rss(resp.text, since_utc, min(limit, int(max_items)) if max_items else limit)
        except ValueError as e:
            raise AdapterError(f"Failed to parse RSS feed: {e}") from e
        log.info("RSS %s 捕获 %d 条", source.name, len(items))
        return FetchResult(items=items)

    def validate_config(self, config: Dict) -> List[str]:
        errors = []
        url = (config or {}).get("feed_url")
        if not url or not isinstance(url, str):
            errors.append("feed_url is required and must be a string")
        elif not url.startswith(("http://", "https://")):
            errors.append("feed_url must be a valid URL")
        max_items = (config or {}).get("max_items")
        if max_items is not None and (not isinstance(max_items, int) or max_items < 1):
            errors.append("max_items must be a positive number")
        return errors


class JsonFeedAdapter(HttpAdapter):
    type = "JSON_FEED"
    name = "JSON Feed"

    async def fetch(self, source: Source, since_utc: Optional[int] = None, limit: int = 100) -> FetchResult:
        url = self._require(source, "url")
        resp = await self._get(url)
        try:
            result = parse_json(resp.json(), since_utc, limit)
        except ValueError as e:
            raise AdapterError(f"Failed to parse JSON feed: {e}") from e
        log.info("JSON %s 捕获 %d 条, odds=%d results=%d",
                 source.name, len(result.items), len(result.odds), len(result.results))
        return result

    def validate_config(self, config: Dict) -> List[str]:
        url = (config or {}).get("url")
        if not url or not isinstance(url, str):
            return ["url is required and must be a string"]
        return []


class DummyAdapter(SourceAdapter):
    type = "DUMMY"
    name = "Dummy Generator"

    async def fetch(self, source: Source, since_utc: Optional[int] = None, limit: int = 100) -> FetchResult:
        cfg = source.config or {}
        count = min(int(cfg.get("count", 2)), limit)
        return generate(source.sport, count=count, seed=cfg.get("seed"))


# ---------- 注册表 ----------

_REGISTRY: Dict[str, SourceAdapter] = {}


def register_adapter(adapter: SourceAdapter) -> None:
    _REGISTRY[adapter.type] = adapter


def get_adapter(source_type: str) -> Optional[SourceAdapter]:
    return _REGISTRY.get(source_type)


def get_adapter_or_raise(source_type: str) -> SourceAdapter:
    adapter = get_adapter(source_type)
    if adapter is None:
        raise AdapterNotFoundError(source_type)
    return adapter


def registered_types() -> List[str]:
    return sorted(_REGISTRY)


for _a in (RssAdapter(), JsonFeedAdapter(), DummyAdapter()):
    register_adapter(_a)
