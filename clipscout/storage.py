# -*- coding: utf-8 -*-
"""
clipscout/storage.py
SQLite（aiosqlite）持久化：
- 初始化/建表（CREATE TABLE IF NOT EXISTS，幂等）
- sources / source_fetch_runs / news_items / odds_snapshots / game_results
  candidates / clip_matches / queries / query_runs 的 upsert 与查询
- transaction()：多行变更放在同一个事务里

单连接 + asyncio.Lock 串行化：事务期间持锁，同一 task 内可重入。
"overlap guard" 靠部分唯一索引（source_id WHERE status IN QUEUED/RUNNING）保证原子性，
插入冲突 = 已有进行中的 run，调用方跳过即可。
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar, Union

import aiosqlite

from .models import (
    ACTIVE_RUN_STATUSES,
    Candidate,
    ClipMatch,
    GameResult,
    MatchStatus,
    NewsItem,
    OddsSnapshot,
    QueryDefinition,
    QueryRun,
    Source,
    SourceFetchRun,
    SourceStatus,
)
from .utils import get_logger, join_multi, now_ms, split_multi

log = get_logger("storage")

T = TypeVar("T")


def new_id() -> str:
    return uuid.uuid4().hex


# --------- 建表 SQL（严格对齐 models 字段） ---------
SCHEMA = """
CREATE TABLE IF NOT EXISTS sources (
    id                    TEXT PRIMARY KEY,
    org_id                TEXT NOT NULL,
    name                  TEXT NOT NULL,
    type                  TEXT NOT NULL,
    sport                 TEXT NOT NULL,
    config                TEXT,
    schedule_type         TEXT NOT NULL DEFAULT 'MANUAL',
    schedule_cron         TEXT,
    refresh_interval_min  INTEGER DEFAULT 60,
    is_scheduled          INTEGER DEFAULT 0,
    status                TEXT NOT NULL DEFAULT 'ACTIVE',
    last_fetch_at_utc     INTEGER,
    last_success_at_utc   INTEGER,
    last_error_at_utc     INTEGER,
    last_error_message    TEXT,
    error_count           INTEGER DEFAULT 0,
    fetch_count           INTEGER DEFAULT 0,
    next_fetch_at_utc     INTEGER,
    last_scheduled_at_utc INTEGER,
    created_at_utc        INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS source_fetch_runs (
    id                 TEXT PRIMARY KEY,
    source_id          TEXT NOT NULL,
    org_id             TEXT NOT NULL,
    status             TEXT NOT NULL,
    triggered_by       TEXT NOT NULL,
    items_fetched      INTEGER DEFAULT 0,
    new_items          INTEGER DEFAULT 0,
    duplicates_skipped INTEGER DEFAULT 0,
    odds_upserted      INTEGER DEFAULT 0,
    results_upserted   INTEGER DEFAULT 0,
    error_message      TEXT,
    started_at_utc     INTEGER,
    finished_at_utc    INTEGER,
    created_at_utc     INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS news_items (
    id               TEXT PRIMARY KEY,
    org_id           TEXT NOT NULL,
    source_id        TEXT NOT NULL,
    external_id      TEXT NOT NULL,
    type             TEXT NOT NULL,
    sport            TEXT NOT NULL,
    headline         TEXT NOT NULL,
    content          TEXT,
    url              TEXT,
    image_url        TEXT,
    published_at_utc INTEGER NOT NULL,
    author           TEXT,
    teams            TEXT,
    players          TEXT,
    topics           TEXT,
    importance_score INTEGER DEFAULT 0,
    score_breakdown  TEXT,
    score_reasoning  TEXT,
    is_processed     INTEGER DEFAULT 0,
    is_paired        INTEGER DEFAULT 0,
    created_at_utc   INTEGER NOT NULL,
    scored_at_utc    INTEGER,
    UNIQUE(org_id, source_id, external_id)
);

CREATE TABLE IF NOT EXISTS odds_snapshots (
    id               TEXT PRIMARY KEY,
    org_id           TEXT NOT NULL,
    source_id        TEXT NOT NULL,
    sport            TEXT NOT NULL,
    home_team        TEXT NOT NULL,
    away_team        TEXT NOT NULL,
    game_date_utc    INTEGER NOT NULL,
    external_game_id TEXT,
    home_moneyline   INTEGER,
    away_moneyline   INTEGER,
    spread           REAL,
    spread_juice     INTEGER,
    over_under       REAL,
    over_juice       INTEGER,
    under_juice      INTEGER,
    updated_at_utc   INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS game_results (
    id               TEXT PRIMARY KEY,
    org_id           TEXT NOT NULL,
    source_id        TEXT NOT NULL,
    sport            TEXT NOT NULL,
    home_team        TEXT NOT NULL,
    away_team        TEXT NOT NULL,
    game_date_utc    INTEGER NOT NULL,
    external_game_id TEXT,
    home_score       INTEGER,
    away_score       INTEGER,
    status           TEXT,
    outcome          TEXT,
    updated_at_utc   INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS candidates (
    id               TEXT PRIMARY KEY,
    org_id           TEXT NOT NULL,
    sport            TEXT NOT NULL,
    title            TEXT NOT NULL,
    description      TEXT,
    channel_title    TEXT,
    people           TEXT,
    teams            TEXT,
    topics           TEXT,
    relevance_score  REAL DEFAULT 0.0,
    published_at_utc INTEGER NOT NULL,
    created_at_utc   INTEGER NOT NULL,
    deleted_at_utc   INTEGER
);

CREATE TABLE IF NOT EXISTS clip_matches (
    id             TEXT PRIMARY KEY,
    org_id         TEXT NOT NULL,
    news_item_id   TEXT NOT NULL,
    candidate_id   TEXT NOT NULL,
    match_score    REAL NOT NULL,
    match_reason   TEXT,
    status         TEXT NOT NULL DEFAULT 'PENDING',
    created_at_utc INTEGER NOT NULL,
    updated_at_utc INTEGER NOT NULL,
    UNIQUE(news_item_id, candidate_id)
);

CREATE TABLE IF NOT EXISTS queries (
    id              TEXT PRIMARY KEY,
    org_id          TEXT NOT NULL,
    name            TEXT NOT NULL,
    sport           TEXT,
    schedule_type   TEXT NOT NULL DEFAULT 'MANUAL',
    schedule_cron   TEXT,
    is_scheduled    INTEGER DEFAULT 0,
    is_active       INTEGER DEFAULT 1,
    next_run_at_utc INTEGER,
    last_run_at_utc INTEGER,
    created_at_utc  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS query_runs (
    id              TEXT PRIMARY KEY,
    org_id          TEXT NOT NULL,
    query_id        TEXT NOT NULL,
    status          TEXT NOT NULL,
    triggered_by    TEXT NOT NULL,
    error_message   TEXT,
    started_at_utc  INTEGER,
    finished_at_utc INTEGER,
    created_at_utc  INTEGER NOT NULL
)
"""

SCHEMA_IDX = """
CREATE UNIQUE INDEX IF NOT EXISTS uq_fetch_runs_active
    ON source_fetch_runs(source_id) WHERE status IN ('QUEUED','RUNNING');
CREATE UNIQUE INDEX IF NOT EXISTS uq_query_runs_active
    ON query_runs(query_id) WHERE status IN ('QUEUED','RUNNING');
CREATE INDEX IF NOT EXISTS idx_sources_due     ON sources(is_scheduled, status, next_fetch_at_utc);
CREATE INDEX IF NOT EXISTS idx_fetch_runs_src  ON source_fetch_runs(source_id, created_at_utc DESC);
CREATE INDEX IF NOT EXISTS idx_news_published  ON news_items(org_id, published_at_utc DESC);
CREATE INDEX IF NOT EXISTS idx_news_created    ON news_items(org_id, created_at_utc);
CREATE INDEX IF NOT EXISTS idx_odds_ext        ON odds_snapshots(org_id, external_game_id);
CREATE INDEX IF NOT EXISTS idx_odds_game       ON odds_snapshots(org_id, home_team, away_team, game_date_utc);
CREATE INDEX IF NOT EXISTS idx_results_ext     ON game_results(org_id, external_game_id);
CREATE INDEX IF NOT EXISTS idx_results_game    ON game_results(org_id, home_team, away_team, game_date_utc);
CREATE INDEX IF NOT EXISTS idx_candidates_pool ON candidates(org_id, sport, published_at_utc);
CREATE INDEX IF NOT EXISTS idx_clip_news       ON clip_matches(news_item_id)
"""

# 模型字段 <-> 列 的编码规则
_MULTI = {"teams", "players", "topics", "people"}
_JSON = {"config", "score_breakdown"}
_BOOL = {"is_scheduled", "is_processed", "is_paired", "is_active"}


def _encode(obj: Any) -> Dict[str, Any]:
    row: Dict[str, Any] = {}
    for k, v in asdict(obj).items():
        if k in _MULTI:
            v = join_multi(v)
        elif k in _JSON:
            v = json.dumps(v or {}, ensure_ascii=False)
        elif k in _BOOL:
            v = 1 if v else 0
        row[k] = v
    return row


def _decode(cls: Type[T], row: Any) -> T:
    keys = row.keys()
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in keys:
            continue
        v = row[f.name]
        if f.name in _MULTI:
            v = split_multi(v)
        elif f.name in _JSON:
            v = json.loads(v) if v else {}
        elif f.name in _BOOL:
            v = bool(v)
        kwargs[f.name] = v
    return cls(**kwargs)


# --------- 初始化 ---------
async def init_db(db_path: Union[str, Path]) -> "Store":
    """
    初始化数据库并返回 Store。
    isolation_level=None：单条语句自动提交；多行变更走 Store.transaction()。
    """
    p = Path(db_path)
    if str(db_path) != ":memory:":
        p.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path), isolation_level=None)
    db.row_factory = aiosqlite.Row
    # 性能相关 pragma
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    for block in (SCHEMA, SCHEMA_IDX):
        for stmt in block.split(";"):
            s = stmt.strip()
            if s:
                await db.execute(s + ";")
    log.debug("db ready: %s", db_path)
    return Store(db)


class Store:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None

    async def close(self) -> None:
        await self.db.close()

    # ---------- 锁与事务 ----------

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        # 事务持有者本身再次进入时直接放行
        if self._owner is not None and self._owner is asyncio.current_task():
            yield
            return
        async with self._lock:
            self._owner = asyncio.current_task()
            try:
                yield
            finally:
                self._owner = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Store"]:
        """BEGIN IMMEDIATE ... COMMIT；异常则 ROLLBACK 并继续抛出"""
        async with self._locked():
            if self.db.in_transaction:
                # 嵌套：并入外层事务
                yield self
                return
            await self.db.execute("BEGIN IMMEDIATE;")
            try:
                yield self
            except BaseException:
                await self.db.execute("ROLLBACK;")
                raise
            else:
                await self.db.execute("COMMIT;")

    async def _exec(self, sql: str, params: Sequence[Any] = ()) -> int:
        async with self._locked():
            cur = await self.db.execute(sql, tuple(params))
            n = cur.rowcount
            await cur.close()
            return n

    async def _one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Any]:
        async with self._locked():
            async with self.db.execute(sql, tuple(params)) as cur:
                return await cur.fetchone()

    async def _all(self, sql: str, params: Sequence[Any] = ()) -> List[Any]:
        async with self._locked():
            async with self.db.execute(sql, tuple(params)) as cur:
                return list(await cur.fetchall())

    async def _insert(self, table: str, obj: Any, on_conflict: str = "") -> int:
        row = _encode(obj)
        cols = ", ".join(row.keys())
        marks = ", ".join("?" for _ in row)
        sql = f"INSERT INTO {table}({cols}) VALUES({marks}) {on_conflict}"
        return await self._exec(sql, list(row.values()))

    async def _update(self, table: str, id_: str, values: Dict[str, Any]) -> int:
        if not values:
            return 0
        sets = ", ".join(f"{k} = ?" for k in values)
        return await self._exec(f"UPDATE {table} SET {sets} WHERE id = ?", [*values.values(), id_])

    # =====================================================================
    # sources
    # =====================================================================

    async def upsert_source(self, src: Source) -> None:
        """按 id 幂等写入；运行态字段（last_*、计数、next_fetch_at）不被覆盖"""
        if not src.created_at_utc:
            src.created_at_utc = now_ms()
        await self._insert("sources", src, """
        ON CONFLICT(id) DO UPDATE SET
            org_id               = excluded.org_id,
            name                 = excluded.name,
            type                 = excluded.type,
            sport                = excluded.sport,
            config               = excluded.config,
            schedule_type        = excluded.schedule_type,
            schedule_cron        = excluded.schedule_cron,
            refresh_interval_min = excluded.refresh_interval_min,
            is_scheduled         = excluded.is_scheduled,
            status               = excluded.status,
            next_fetch_at_utc    = COALESCE(sources.next_fetch_at_utc, excluded.next_fetch_at_utc)
        """)

    async def get_source(self, source_id: str) -> Optional[Source]:
        row = await self._one("SELECT * FROM sources WHERE id = ?", (source_id,))
        return _decode(Source, row) if row else None

    async def list_sources(self, org_id: Optional[str] = None) -> List[Source]:
        if org_id:
            rows = await self._all("SELECT * FROM sources WHERE org_id = ? ORDER BY name", (org_id,))
        else:
            rows = await self._all("SELECT * FROM sources ORDER BY name")
        return [_decode(Source, r) for r in rows]

    async def list_due_sources(self, now_utc: int) -> List[Source]:
        rows = await self._all(
            """
            SELECT * FROM sources
             WHERE is_scheduled = 1
               AND status = ?
               AND (next_fetch_at_utc IS NULL OR next_fetch_at_utc <= ?)
             ORDER BY next_fetch_at_utc
            """,
            (SourceStatus.ACTIVE.value, now_utc),
        )
        return [_decode(Source, r) for r in rows]

    async def set_source_schedule(self, source_id: str, next_fetch_at_utc: Optional[int],
                                  last_scheduled_at_utc: int) -> None:
        await self._update("sources", source_id, {
            "next_fetch_at_utc": next_fetch_at_utc,
            "last_scheduled_at_utc": last_scheduled_at_utc,
        })

    async def record_source_success(self, source_id: str, at_utc: int) -> None:
        await self._exec(
            """
            UPDATE sources
               SET last_fetch_at_utc = ?, last_success_at_utc = ?, fetch_count = fetch_count + 1
             WHERE id = ?
            """,
            (at_utc, at_utc, source_id),
        )

    async def record_source_error(self, source_id: str, at_utc: int, message: str) -> None:
        await self._exec(
            """
            UPDATE sources
               SET last_error_at_utc = ?, last_error_message = ?, error_count = error_count + 1
             WHERE id = ?
            """,
            (at_utc, message, source_id),
        )

    # =====================================================================
    # source_fetch_runs
    # =====================================================================

    async def create_fetch_run(self, run: SourceFetchRun) -> Optional[SourceFetchRun]:
        """
        新建 run；该 source 已有 QUEUED/RUNNING 的 run 时返回 None（部分唯一索引冲突）
        """
        if not run.created_at_utc:
            run.created_at_utc = now_ms()
        try:
            await self._insert("source_fetch_runs", run)
        except sqlite3.IntegrityError:
            return None
        return run

    async def get_fetch_run(self, run_id: str) -> Optional[SourceFetchRun]:
        row = await self._one("SELECT * FROM source_fetch_runs WHERE id = ?", (run_id,))
        return _decode(SourceFetchRun, row) if row else None

    async def find_active_fetch_run(self, source_id: str) -> Optional[SourceFetchRun]:
        row = await self._one(
            "SELECT * FROM source_fetch_runs WHERE source_id = ? AND status IN (?, ?) LIMIT 1",
            (source_id, *ACTIVE_RUN_STATUSES),
        )
        return _decode(SourceFetchRun, row) if row else None

    async def list_active_fetch_runs(self) -> List[SourceFetchRun]:
        rows = await self._all(
            "SELECT * FROM source_fetch_runs WHERE status IN (?, ?) ORDER BY created_at_utc",
            ACTIVE_RUN_STATUSES,
        )
        return [_decode(SourceFetchRun, r) for r in rows]

    async def list_fetch_runs(self, source_id: str, limit: int = 50) -> List[SourceFetchRun]:
        rows = await self._all(
            "SELECT * FROM source_fetch_runs WHERE source_id = ? ORDER BY created_at_utc DESC LIMIT ?",
            (source_id, limit),
        )
        return [_decode(SourceFetchRun, r) for r in rows]

    async def update_fetch_run(self, run_id: str, **values: Any) -> None:
        await self._update("source_fetch_runs", run_id, values)

    async def sum_duplicates_skipped(self, org_id: str, since_utc: int) -> int:
        row = await self._one(
            "SELECT COALESCE(SUM(duplicates_skipped), 0) FROM source_fetch_runs WHERE org_id = ? AND created_at_utc >= ?",
            (org_id, since_utc),
        )
        return int(row[0]) if row else 0

    # =====================================================================
    # news_items
    # =====================================================================

    async def insert_news_item(self, item: NewsItem) -> Tuple[NewsItem, bool]:
        """
        幂等写入（ON CONFLICT DO NOTHING）。
        返回 (库里的那条, 是否新建)；已存在时不覆盖任何字段。
        """
        if not item.created_at_utc:
            item.created_at_utc = now_ms()
        async with self._locked():
            n = await self._insert("news_items", item, "ON CONFLICT(org_id, source_id, external_id) DO NOTHING")
            if n:
                return item, True
            existing = await self.find_news_item(item.org_id, item.source_id, item.external_id)
        if existing is None:
            raise RuntimeError(f"insert_news_item: conflict row vanished for {item.external_id}")
        return existing, False

    async def get_news_item(self, item_id: str) -> Optional[NewsItem]:
        row = await self._one("SELECT * FROM news_items WHERE id = ?", (item_id,))
        return _decode(NewsItem, row) if row else None

    async def find_news_item(self, org_id: str, source_id: str, external_id: str) -> Optional[NewsItem]:
        row = await self._one(
            "SELECT * FROM news_items WHERE org_id = ? AND source_id = ? AND external_id = ?",
            (org_id, source_id, external_id),
        )
        return _decode(NewsItem, row) if row else None

    async def list_news_published_since(self, org_id: str, since_utc: int,
                                        limit: Optional[int] = None) -> List[NewsItem]:
        """按发布时间倒序；limit=None 不限"""
        sql = "SELECT * FROM news_items WHERE org_id = ? AND published_at_utc >= ? ORDER BY published_at_utc DESC"
        params: List[Any] = [org_id, since_utc]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [_decode(NewsItem, r) for r in await self._all(sql, params)]

    async def list_news_created_since(self, org_id: str, since_utc: int) -> List[NewsItem]:
        rows = await self._all(
            "SELECT * FROM news_items WHERE org_id = ? AND created_at_utc >= ? ORDER BY created_at_utc ASC, rowid ASC",
            (org_id, since_utc),
        )
        return [_decode(NewsItem, r) for r in rows]

    async def save_news_score(self, item_id: str, *, teams: List[str], players: List[str],
                              topics: List[str], importance_score: int,
                              score_breakdown: Dict[str, float], score_reasoning: str,
                              scored_at_utc: int) -> None:
        await self._update("news_items", item_id, {
            "teams": join_multi(teams),
            "players": join_multi(players),
            "topics": join_multi(topics),
            "importance_score": int(importance_score),
            "score_breakdown": json.dumps(score_breakdown),
            "score_reasoning": score_reasoning,
            "is_processed": 1,
            "scored_at_utc": scored_at_utc,
        })

    async def set_news_paired(self, item_id: str, paired: bool = True) -> None:
        await self._update("news_items", item_id, {"is_paired": 1 if paired else 0})

    async def delete_news_items(self, ids: Iterable[str]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        marks = ", ".join("?" for _ in ids)
        return await self._exec(f"DELETE FROM news_items WHERE id IN ({marks})", ids)

    async def count_news_created_since(self, org_id: str, since_utc: int) -> Tuple[int, int]:
        """返回 (条数, 涉及的 source 数)"""
        row = await self._one(
            "SELECT COUNT(*), COUNT(DISTINCT source_id) FROM news_items WHERE org_id = ? AND created_at_utc >= ?",
            (org_id, since_utc),
        )
        return (int(row[0]), int(row[1])) if row else (0, 0)

    # =====================================================================
    # odds_snapshots / game_results
    # 有 external_game_id 按 (org, external_game_id)，否则按 (org, home, away, game_date)
    # =====================================================================

    async def _find_game_row(self, table: str, org_id: str, external_game_id: Optional[str],
                             home: str, away: str, game_date_utc: int) -> Optional[Any]:
        if external_game_id:
            return await self._one(
                f"SELECT id FROM {table} WHERE org_id = ? AND external_game_id = ? LIMIT 1",
                (org_id, external_game_id),
            )
        return await self._one(
            f"SELECT id FROM {table} WHERE org_id = ? AND home_team = ? AND away_team = ? AND game_date_utc = ? LIMIT 1",
            (org_id, home, away, game_date_utc),
        )

    async def _upsert_game_row(self, table: str, obj: Any) -> str:
        obj.updated_at_utc = now_ms()
        async with self.transaction():
            row = await self._find_game_row(table, obj.org_id, obj.external_game_id,
                                            obj.home_team, obj.away_team, obj.game_date_utc)
            if row is None:
                await self._insert(table, obj)
                return obj.id
            values = _encode(obj)
            values.pop("id")
            await self._update(table, row["id"], values)
            obj.id = row["id"]
            return row["id"]

    async def upsert_odds(self, snap: OddsSnapshot) -> str:
        return await self._upsert_game_row("odds_snapshots", snap)

    async def upsert_game_result(self, res: GameResult) -> str:
        return await self._upsert_game_row("game_results", res)

    async def list_odds(self, org_id: str) -> List[OddsSnapshot]:
        rows = await self._all("SELECT * FROM odds_snapshots WHERE org_id = ? ORDER BY game_date_utc", (org_id,))
        return [_decode(OddsSnapshot, r) for r in rows]

    async def list_game_results(self, org_id: str) -> List[GameResult]:
        rows = await self._all("SELECT * FROM game_results WHERE org_id = ? ORDER BY game_date_utc", (org_id,))
        return [_decode(GameResult, r) for r in rows]

    async def list_upcoming_games(self, org_id: str, sport: str, from_utc: int, to_utc: int) -> List[OddsSnapshot]:
        rows = await self._all(
            """
            SELECT * FROM odds_snapshots
             WHERE org_id = ? AND sport = ? AND game_date_utc >= ? AND game_date_utc <= ?
             ORDER BY game_date_utc
            """,
            (org_id, sport, from_utc, to_utc),
        )
        return [_decode(OddsSnapshot, r) for r in rows]

    # =====================================================================
    # candidates / clip_matches
    # =====================================================================

    async def upsert_candidate(self, cand: Candidate) -> None:
        if not cand.created_at_utc:
            cand.created_at_utc = now_ms()
        await self._insert("candidates", cand, """
        ON CONFLICT(id) DO UPDATE SET
            title           = excluded.title,
            description     = excluded.description,
            channel_title   = excluded.channel_title,
            people          = excluded.people,
            teams           = excluded.teams,
            topics          = excluded.topics,
            relevance_score = excluded.relevance_score,
            deleted_at_utc  = excluded.deleted_at_utc
        """)

    async def list_pairing_candidates(self, org_id: str, sport: str, published_since_utc: int,
                                      limit: int = 100) -> List[Candidate]:
        rows = await self._all(
            """
            SELECT * FROM candidates
             WHERE org_id = ? AND sport = ? AND deleted_at_utc IS NULL AND published_at_utc >= ?
             ORDER BY relevance_score DESC
             LIMIT ?
            """,
            (org_id, sport, published_since_utc, limit),
        )
        return [_decode(Candidate, r) for r in rows]

    async def upsert_clip_match(self, org_id: str, news_item_id: str, candidate_id: str,
                                score: float, reason: str) -> None:
        """(news_item_id, candidate_id) 幂等；已有记录保留 status，只刷新分数和原因"""
        ts = now_ms()
        await self._exec(
            """
            INSERT INTO clip_matches(id, org_id, news_item_id, candidate_id, match_score, match_reason,
                                     status, created_at_utc, updated_at_utc)
            VALUES(?,?,?,?,?,?,?,?,?)
            ON CONFLICT(news_item_id, candidate_id) DO UPDATE SET
                match_score    = excluded.match_score,
                match_reason   = excluded.match_reason,
                updated_at_utc = excluded.updated_at_utc
            """,
            (new_id(), org_id, news_item_id, candidate_id, float(score), reason,
             MatchStatus.PENDING.value, ts, ts),
        )

    async def list_clip_matches(self, news_item_id: str) -> List[ClipMatch]:
        rows = await self._all(
            "SELECT * FROM clip_matches WHERE news_item_id = ? ORDER BY match_score DESC",
            (news_item_id,),
        )
        return [_decode(ClipMatch, r) for r in rows]

    async def set_clip_match_status(self, match_id: str, status: str) -> None:
        await self._update("clip_matches", match_id, {"status": status, "updated_at_utc": now_ms()})

    async def reassign_clip_matches(self, from_item_id: str, to_item_id: str) -> int:
        """
        把 from 的匹配挪到 to；to 已有同 candidate 的匹配时丢弃 from 那条。
        返回挪过去的条数。
        """
        async with self.transaction():
            await self._exec(
                """
                DELETE FROM clip_matches
                 WHERE news_item_id = ?
                   AND candidate_id IN (SELECT candidate_id FROM clip_matches WHERE news_item_id = ?)
                """,
                (from_item_id, to_item_id),
            )
            return await self._exec(
                "UPDATE clip_matches SET news_item_id = ?, updated_at_utc = ? WHERE news_item_id = ?",
                (to_item_id, now_ms(), from_item_id),
            )

    # =====================================================================
    # queries / query_runs
    # =====================================================================

    async def upsert_query(self, q: QueryDefinition) -> None:
        if not q.created_at_utc:
            q.created_at_utc = now_ms()
        await self._insert("queries", q, """
        ON CONFLICT(id) DO UPDATE SET
            name          = excluded.name,
            sport         = excluded.sport,
            schedule_type = excluded.schedule_type,
            schedule_cron = excluded.schedule_cron,
            is_scheduled  = excluded.is_scheduled,
            is_active     = excluded.is_active
        """)

    async def get_query(self, query_id: str) -> Optional[QueryDefinition]:
        row = await self._one("SELECT * FROM queries WHERE id = ?", (query_id,))
        return _decode(QueryDefinition, row) if row else None

    async def list_due_queries(self, now_utc: int) -> List[QueryDefinition]:
        rows = await self._all(
            """
            SELECT * FROM queries
             WHERE is_scheduled = 1 AND is_active = 1
               AND next_run_at_utc IS NOT NULL AND next_run_at_utc <= ?
             ORDER BY next_run_at_utc
            """,
            (now_utc,),
        )
        return [_decode(QueryDefinition, r) for r in rows]

    async def set_query_schedule(self, query_id: str, next_run_at_utc: Optional[int],
                                 last_run_at_utc: int) -> None:
        await self._update("queries", query_id, {
            "next_run_at_utc": next_run_at_utc,
            "last_run_at_utc": last_run_at_utc,
        })

    async def create_query_run(self, run: QueryRun) -> Optional[QueryRun]:
        if not run.created_at_utc:
            run.created_at_utc = now_ms()
        try:
            await self._insert("query_runs", run)
        except sqlite3.IntegrityError:
            return None
        return run

    async def get_query_run(self, run_id: str) -> Optional[QueryRun]:
        row = await self._one("SELECT * FROM query_runs WHERE id = ?", (run_id,))
        return _decode(QueryRun, row) if row else None

    async def find_active_query_run(self, query_id: str) -> Optional[QueryRun]:
        row = await self._one(
            "SELECT * FROM query_runs WHERE query_id = ? AND status IN (?, ?) LIMIT 1",
            (query_id, *ACTIVE_RUN_STATUSES),
        )
        return _decode(QueryRun, row) if row else None

    async def list_active_query_runs(self) -> List[QueryRun]:
        rows = await self._all(
            "SELECT * FROM query_runs WHERE status IN (?, ?) ORDER BY created_at_utc",
            ACTIVE_RUN_STATUSES,
        )
        return [_decode(QueryRun, r) for r in rows]

    async def update_query_run(self, run_id: str, **values: Any) -> None:
        await self._update("query_runs", run_id, values)


