# RSS/Atom 默认解析器：标题、正文、时间、作者、配图提取 + 新闻类型推断

import calendar
import html
import re
from typing import Any, List, Optional

import feedparser

from clipscout.models import NewsItemType, RawNewsItem
from clipscout.utils import now_ms, to_base36

# 有序：先命中先返回
NEWS_TYPE_RULES = (
    (("trade", "traded", "deal"), NewsItemType.TRADE),
    (("injury", "injured", "out for", "day-to-day"), NewsItemType.INJURY),
    (("breaking", "just in", "developing"), NewsItemType.BREAKING),
    (("odds", "betting", "line"), NewsItemType.BETTING_LINE),
    (("final", "score", "win", "defeat"), NewsItemType.GAME_RESULT),
    (("rumor", "reportedly", "sources say"), NewsItemType.RUMOR),
    (("schedule", "upcoming", "matchup"), NewsItemType.SCHEDULE),
)


def infer_news_type(title: Optional[str], content: Optional[str]) -> str:
    text = f"{title or ''} {content or ''}".lower()
    for words, news_type in NEWS_TYPE_RULES:
        if any(w in text for w in words):
            return news_type.value
    return NewsItemType.ANALYSIS.value


_SCRIPT_STYLE = re.compile(r"<(script|style)[^>]*>[\s\S]*?</\1>", re.IGNORECASE)
_BLOCK_END = re.compile(r"</(p|div|br|h[1-6]|li|tr)>", re.IGNORECASE)
_BR = re.compile(r"<(br|hr)\s*/?>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")
_IMG = re.compile(r"""<img[^>]+src=["']([^"']+)["']""", re.IGNORECASE)


def strip_html(text: str) -> str:
    if not text:
        return ""
    s = _SCRIPT_STYLE.sub("", text)
    s = _BLOCK_END.sub("\n", s)
    s = _BR.sub("\n", s)
    s = _TAG.sub("", s)
    s = html.unescape(s).replace("\xa0", " ")
    s = re.sub(r"\n\s*\n", "\n\n", s)
    s = re.sub(r"[ \t]+", " ", s)
    return s.strip()


def hash_id(value: str, prefix: str = "rss") -> str:
    """稳定的短 ID：31 进制滚动哈希（32 位有符号）取绝对值转 base36"""
    h = 0
    data = value.encode("utf-16-le")
    for i in range(0, len(data), 2):
        h = (h * 31 + (data[i] | (data[i + 1] << 8))) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return f"{prefix}-{to_base36(abs(h))}"


def _published_ts(entry: Any) -> Optional[int]:
    """
    从 feedparser 的 entry 里取发布时间（struct_time 为 UTC）；没有返回 None
    """
    for key in ("published_parsed", "updated_parsed"):
        st = entry.get(key)
        if st:
            return calendar.timegm(st) * 1000
    return None


def _image_url(entry: Any, body: str) -> Optional[str]:
    for key in ("media_content", "media_thumbnail"):
        media = entry.get(key) or []
        if media and media[0].get("url"):
            return media[0]["url"]
    m = _IMG.search(body or "")
    return m.group(1) if m else None


def parse_rss(text: str, since_utc: Optional[int] = None, limit: Optional[int] = None) -> List[RawNewsItem]:
    """
    解析RSS/Atom内容

    参数:
        text: RSS/Atom XML文本
        since_utc: 早于此时间(UTC毫秒)的条目跳过
        limit: 最多返回条数

    返回:
        RawNewsItem 列表
    """
    feed = feedparser.parse(text)
    if feed.get("bozo") and not feed.get("entries"):
        raise ValueError(f"unparseable feed: {feed.get('bozo_exception')}")

    items: List[RawNewsItem] = []
    for entry in feed.get("entries", []):
        if limit and len(items) >= limit:
            break
        title = (entry.get("title") or "").strip()
        link = (entry.get("link") or "").strip()
        if not title and not link:
            continue

        published = _published_ts(entry) or now_ms()
        if since_utc and published < since_utc:
            continue

        body = ""
        if entry.get("content"):
            body = entry["content"][0].get("value", "")
        body = body or entry.get("summary", "")
        content = strip_html(body)

        base_id = entry.get("id") or link or f"{title}-{entry.get('published', '')}"
        items.append(RawNewsItem(
            external_id=hash_id(base_id),
            type=infer_news_type(title, content),
            headline=title or "Untitled",
            content=content,
            url=link or None,
            image_url=_image_url(entry, body),
            published_at_utc=published,
            author=entry.get("author") or None,
            raw={
                "title": entry.get("title"),
                "link": entry.get("link"),
                "published": entry.get("published"),
            },
        ))
    return items
