# -*- coding: utf-8 -*-
"""
tests/test_parsers.py
RSS / JSON / dummy 解析器，以及适配器注册表与 HTTP 错误归类（httpx.MockTransport，不联网）。
"""
import asyncio

import httpx
import pytest

from clipscout.adapters import (
    DummyAdapter,
    JsonFeedAdapter,
    RssAdapter,
    get_adapter,
    get_adapter_or_raise,
    registered_types,
)
from clipscout.errors import AdapterError, AdapterNotFoundError, ConfigurationError, FatalJobError
from clipscout.parsers.dummy_gen import generate
from clipscout.parsers.json_default import parse_json
from clipscout.parsers.rss_default import hash_id, infer_news_type, parse_rss, strip_html

from conftest import make_source

RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>NFL</title>
<item>
  <title>Chiefs agree to trade for receiver</title>
  <link>https://example.com/a</link>
  <guid>guid-a</guid>
  <pubDate>Fri, 08 Mar 2024 10:00:00 GMT</pubDate>
  <description>&lt;p&gt;Deal is &lt;b&gt;done&lt;/b&gt;&lt;/p&gt;&lt;img src="https://img/x.jpg"&gt;</description>
</item>
<item>
  <title>Old column</title>
  <link>https://example.com/b</link>
  <pubDate>Fri, 01 Mar 2024 10:00:00 GMT</pubDate>
</item>
</channel></rss>
"""

MARCH_8 = 1709892000000  # 2024-03-08T10:00:00Z


def test_infer_news_type_cascade():
    assert infer_news_type("Chiefs trade pick", None) == "TRADE"
    assert infer_news_type("QB day-to-day", None) == "INJURY"
    assert infer_news_type("Developing story", None) == "BREAKING"
    assert infer_news_type("Film room", "deep dive") == "ANALYSIS"


def test_strip_html():
    assert strip_html("<p>Hello&nbsp;<b>world</b></p><script>x()</script>") == "Hello world"
    assert strip_html("") == ""


def test_hash_id_stable():
    assert hash_id("guid-a") == hash_id("guid-a")
    assert hash_id("guid-a").startswith("rss-")
    assert hash_id("guid-a") != hash_id("guid-b")


def test_parse_rss():
    items = parse_rss(RSS)
    assert len(items) == 2
    a = items[0]
    assert a.headline == "Chiefs agree to trade for receiver"
    assert a.type == "TRADE"
    assert a.published_at_utc == MARCH_8
    assert a.content == "Deal is done"
    assert a.image_url == "https://img/x.jpg"
    assert a.external_id == hash_id("guid-a")


def test_parse_rss_since_and_limit():
    assert [i.headline for i in parse_rss(RSS, since_utc=MARCH_8 - 1000)] == ["Chiefs agree to trade for receiver"]
    assert len(parse_rss(RSS, limit=1)) == 1


def test_parse_json_shapes():
    res = parse_json([{"id": 7, "title": "Bills sign kicker", "timestamp": 1709892000}])
    assert res.items[0].external_id == "7"
    assert res.items[0].published_at_utc == MARCH_8

    res = parse_json({
        "items": [{"headline": "Line moves", "type": "betting_line", "published_at": "2024-03-08T10:00:00Z"}],
        "odds": [{"home_team": "Chiefs", "away_team": "Bills", "game_date": MARCH_8, "spread": "-3.5"},
                 {"home_team": "missing date"}],
        "results": [{"home_team": "Eagles", "away_team": "Cowboys", "start_time": MARCH_8,
                     "home_score": 31, "away_score": 24, "status": "final"}],
    })
    assert res.items[0].type == "BETTING_LINE"
    assert res.items[0].external_id.startswith("json-")
    assert len(res.odds) == 1 and res.odds[0].spread == -3.5
    assert res.results[0].home_score == 31


def test_parse_json_rejects_scalars():
    with pytest.raises(ValueError):
        parse_json("nope")


def test_dummy_generate_deterministic():
    a = generate("NFL", count=3, seed=1, now_utc=MARCH_8)
    b = generate("NFL", count=3, seed=1, now_utc=MARCH_8)
    assert [i.external_id for i in a.items] == [i.external_id for i in b.items]
    assert [i.headline for i in a.items] == [i.headline for i in b.items]
    assert len(a.odds) == 2
    assert all(o.game_date_utc > MARCH_8 for o in a.odds)


def test_registry():
    assert {"RSS_FEED", "JSON_FEED", "DUMMY"} <= set(registered_types())
    assert isinstance(get_adapter("DUMMY"), DummyAdapter)
    assert get_adapter("YOUTUBE") is None
    with pytest.raises(AdapterNotFoundError) as ei:
        get_adapter_or_raise("YOUTUBE")
    assert isinstance(ei.value, FatalJobError)
    assert "YOUTUBE" in str(ei.value)


def test_validate_config():
    assert RssAdapter().validate_config({"feed_url": "https://x/rss"}) == []
    assert RssAdapter().validate_config({"feed_url": "ftp://x"}) == ["feed_url must be a valid URL"]
    assert JsonFeedAdapter().validate_config({}) == ["url is required and must be a string"]


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_rss_adapter_fetch():
    async def main():
        async with _client(lambda req: httpx.Response(200, text=RSS)) as client:
            res = await RssAdapter(client).fetch(
                make_source(type="RSS_FEED", config={"feed_url": "https://x/rss", "max_items": 1}))
        assert len(res.items) == 1

    asyncio.run(main())


def test_adapter_http_error_is_retryable():
    async def main():
        async with _client(lambda req: httpx.Response(503)) as client:
            with pytest.raises(AdapterError):
                await JsonFeedAdapter(client).fetch(make_source(type="JSON_FEED", config={"url": "https://x"}))

    asyncio.run(main())


def test_adapter_missing_config_is_fatal():
    async def main():
        with pytest.raises(ConfigurationError):
            await RssAdapter(_client(lambda req: httpx.Response(200))).fetch(make_source(type="RSS_FEED"))

    asyncio.run(main())


def test_dummy_adapter_respects_limit():
    async def main():
        res = await DummyAdapter().fetch(make_source(type="DUMMY", config={"count": 5, "seed": 3}), None, 2)
        assert len(res.items) == 2

    asyncio.run(main())
