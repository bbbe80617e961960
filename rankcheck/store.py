"""Result sinks: in-memory and SQLite stores for finished runs, campaigns and ranking history."""
from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .inputs import InputValidationError
from .models import ListingObservation, QueryTask, RunResult


class CampaignNotFoundError(LookupError):
    pass


class ResultSink(Protocol):
    def save_run(self, run_id: str, result: RunResult, meta: Dict[str, Any]) -> None:
        ...


class CampaignStore(Protocol):
    def save_run(self, run_id: str, result: RunResult, meta: Dict[str, Any]) -> None:
        ...

    def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        ...


def new_run_id() -> str:
    return uuid.uuid4().hex


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _iso(value: Optional[Any]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()
    return str(value)


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return value


def build_run_row(run_id: str, result: RunResult, meta: Dict[str, Any], created_at: str) -> Dict[str, Any]:
    return {
        "id": run_id,
        "campaign_id": meta.get("campaign_id"),
        "created_at": created_at,
        "source_name": meta.get("source_name"),
        "country": meta.get("country"),
        "language": meta.get("language"),
        "device_type": meta.get("device_type"),
        "geo_grid": _jsonable(meta.get("geo_grid")),
        "rank_scope": meta.get("rank_scope"),
        "total_queries": result.total_queries,
        "processed_queries": result.processed_queries,
        "total_results": result.total_results,
        "total_brand_matches": result.total_brand_matches,
        "total_local_pack_matches": result.total_local_pack_matches,
        "api_calls_made": result.api_calls_made,
        "processing_time_seconds": round(result.elapsed_seconds, 2),
        "status": result.status,
        "error_kind": result.error_kind,
        "error_message": result.error_message,
    }


def build_result_row(run_id: str, obs: ListingObservation, created_at: str) -> Dict[str, Any]:
    return {
        "run_id": run_id,
        "created_at": created_at,
        "query": obs.keyword,
        "brand": obs.brand_name,
        "branch": obs.branch_name,
        "ranking_position": obs.rank_position,
        "is_local_pack": obs.is_local_pack,
        "local_pack_position": obs.local_pack_position,
        "device_type": obs.device_type,
        "search_latitude": obs.source_latitude,
        "search_longitude": obs.source_longitude,
        "title": obs.title,
        "address": obs.address,
        "rating": obs.rating,
        "category": obs.category,
        "brand_match": obs.brand_match,
        "latitude": obs.latitude,
        "longitude": obs.longitude,
        "raw_data": obs.raw or {},
    }


def build_history(rows_by_run: Iterable[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """One entry per run (newest first) with the best matched position and its change.

    ``change`` is previous minus current, so a positive value means the
    listing moved up. Runs where the brand was not found report None.
    """
    entries: List[Dict[str, Any]] = []
    for rows in rows_by_run:
        if not rows:
            continue
        matched = [
            r for r in rows if r.get("brand_match") and r.get("ranking_position") is not None
        ]
        best = min(matched, key=lambda r: r["ranking_position"]) if matched else None
        entries.append(
            {
                "run_id": rows[0]["run_id"],
                "created_at": rows[0]["created_at"],
                "query": rows[0]["query"],
                "brand": rows[0]["brand"],
                "branch": rows[0]["branch"],
                "ranking_position": best["ranking_position"] if best else None,
                "is_local_pack": bool(best and best.get("is_local_pack")),
                "title": best["title"] if best else None,
                "matched_count": len(matched),
            }
        )
    for idx, entry in enumerate(entries):
        prev = entries[idx + 1] if idx + 1 < len(entries) else None
        prev_pos = prev["ranking_position"] if prev else None
        curr_pos = entry["ranking_position"]
        entry["previous_position"] = prev_pos
        entry["change"] = prev_pos - curr_pos if prev_pos is not None and curr_pos is not None else None
    return entries


def tasks_to_query_data(tasks: Iterable[QueryTask]) -> List[Dict[str, str]]:
    """Saved query rows use the input CSV's column names."""
    return [{"Keywords": t.keyword, "Brand": t.brand_name, "Branch": t.branch_name} for t in tasks]


def campaign_tasks(campaign: Dict[str, Any]) -> List[QueryTask]:
    tasks: List[QueryTask] = []
    for row in campaign.get("query_data") or []:
        keyword = str(row.get("Keywords") or "").strip()
        brand = str(row.get("Brand") or "").strip()
        branch = str(row.get("Branch") or "").strip()
        if keyword and brand and branch:
            tasks.append(QueryTask(keyword, brand, branch))
    return tasks


def build_campaign_row(
    campaign_id: str,
    name: str,
    tasks: Optional[Iterable[QueryTask]],
    country: Optional[str],
    language: Optional[str],
    description: Optional[str],
    created_at: str,
) -> Dict[str, Any]:
    name = (name or "").strip()
    if not name:
        raise InputValidationError("Campaign name is required")
    return {
        "id": campaign_id,
        "name": name,
        "description": description,
        "query_data": tasks_to_query_data(tasks) if tasks is not None else None,
        "country": country,
        "language": language,
        "created_at": created_at,
        "updated_at": created_at,
    }


def build_campaign_summary(campaign: Dict[str, Any], runs: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "campaign": campaign,
        "searches": runs,
        "stats": {
            "total_searches": len(runs),
            "last_run": runs[0]["created_at"] if runs else None,
        },
    }


def _dump_query_data(query_data: Optional[List[Dict[str, str]]]) -> Optional[str]:
    return json.dumps(query_data, ensure_ascii=False) if query_data is not None else None


class InMemoryResultStore:
    def __init__(self) -> None:
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._results: Dict[str, List[Dict[str, Any]]] = {}
        self._order: List[str] = []
        self._campaigns: Dict[str, Dict[str, Any]] = {}

    def save_run(self, run_id: str, result: RunResult, meta: Dict[str, Any]) -> None:
        campaign_id = meta.get("campaign_id")
        if campaign_id is not None and campaign_id not in self._campaigns:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
        created_at = meta.get("created_at") or utc_now_iso()
        self._runs[run_id] = build_run_row(run_id, result, meta, created_at)
        self._results[run_id] = [build_result_row(run_id, o, created_at) for o in result.observations]
        if run_id in self._order:
            self._order.remove(run_id)
        self._order.append(run_id)

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        run = self._runs.get(run_id)
        return dict(run) if run else None

    def list_runs(self, limit: int = 50, campaign_id: Optional[str] = None) -> List[Dict[str, Any]]:
        run_ids = [
            rid for rid in self._order if campaign_id is None or self._runs[rid]["campaign_id"] == campaign_id
        ]
        newest = sorted(
            run_ids, key=lambda rid: (self._runs[rid]["created_at"], self._order.index(rid)), reverse=True
        )
        return [dict(self._runs[rid]) for rid in newest[:limit]]

    def create_campaign(
        self,
        name: str,
        tasks: Optional[Iterable[QueryTask]] = None,
        country: Optional[str] = None,
        language: Optional[str] = None,
        description: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        campaign = build_campaign_row(
            new_run_id(), name, tasks, country, language, description, created_at or utc_now_iso()
        )
        if self.find_campaign(campaign["name"]) is not None:
            raise InputValidationError(f"Campaign already exists: {campaign['name']}")
        self._campaigns[campaign["id"]] = campaign
        return dict(campaign)

    def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        campaign = self._campaigns.get(campaign_id)
        return dict(campaign) if campaign else None

    def find_campaign(self, name: str) -> Optional[Dict[str, Any]]:
        for campaign in self._campaigns.values():
            if campaign["name"] == (name or "").strip():
                return dict(campaign)
        return None

    def list_campaigns(self) -> List[Dict[str, Any]]:
        campaigns = sorted(self._campaigns.values(), key=lambda c: c["created_at"], reverse=True)
        return [dict(c) for c in campaigns]

    def update_campaign(
        self,
        campaign_id: str,
        tasks: Optional[Iterable[QueryTask]] = None,
        country: Optional[str] = None,
        language: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None:
            return None
        if tasks is not None:
            campaign["query_data"] = tasks_to_query_data(tasks)
        if country is not None:
            campaign["country"] = country
        if language is not None:
            campaign["language"] = language
        if description is not None:
            campaign["description"] = description
        campaign["updated_at"] = utc_now_iso()
        return dict(campaign)

    def delete_campaign(self, campaign_id: str) -> bool:
        if self._campaigns.pop(campaign_id, None) is None:
            return False
        for run_id in [rid for rid in self._order if self._runs[rid]["campaign_id"] == campaign_id]:
            self._order.remove(run_id)
            self._runs.pop(run_id, None)
            self._results.pop(run_id, None)
        return True

    def campaign_summary(self, campaign_id: str) -> Dict[str, Any]:
        campaign = self.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
        return build_campaign_summary(campaign, self.list_runs(limit=len(self._order), campaign_id=campaign_id))

    def get_results(self, run_id: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._results.get(run_id, [])]

    def ranking_history(
        self,
        query: str,
        brand: str,
        branch: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        start_iso, end_iso = _iso(start), _iso(end)
        per_run: List[List[Dict[str, Any]]] = []
        for run in self.list_runs(limit=len(self._order)):
            if start_iso and run["created_at"] < start_iso:
                continue
            if end_iso and run["created_at"] > end_iso:
                continue
            rows = [
                r
                for r in self._results.get(run["id"], [])
                if r["query"] == query and r["brand"] == brand and r["branch"] == branch
            ]
            per_run.append(rows)
        return build_history(per_run)


class SqliteResultStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self._configure_conn()
        self._init_db()

    def _configure_conn(self) -> None:
        cur = self.conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.fetchone()
        except sqlite3.DatabaseError:
            pass
        cur.execute("PRAGMA foreign_keys=ON")

    def _init_db(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS campaigns (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                description TEXT,
                query_data_json TEXT,
                country TEXT,
                language TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS searches (
                id TEXT PRIMARY KEY,
                campaign_id TEXT REFERENCES campaigns(id) ON DELETE CASCADE,
                created_at TEXT NOT NULL,
                source_name TEXT,
                country TEXT,
                language TEXT,
                device_type TEXT,
                geo_grid_json TEXT,
                rank_scope TEXT,
                total_queries INTEGER NOT NULL,
                processed_queries INTEGER NOT NULL,
                total_results INTEGER NOT NULL,
                total_brand_matches INTEGER NOT NULL,
                total_local_pack_matches INTEGER NOT NULL,
                api_calls_made INTEGER NOT NULL,
                processing_time_seconds REAL,
                status TEXT NOT NULL,
                error_kind TEXT,
                error_message TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ranking_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL REFERENCES searches(id) ON DELETE CASCADE,
                created_at TEXT NOT NULL,
                query TEXT NOT NULL,
                brand TEXT NOT NULL,
                branch TEXT NOT NULL,
                ranking_position INTEGER,
                is_local_pack INTEGER NOT NULL,
                local_pack_position INTEGER,
                device_type TEXT,
                search_latitude REAL,
                search_longitude REAL,
                title TEXT,
                address TEXT,
                rating REAL,
                category TEXT,
                brand_match INTEGER NOT NULL,
                latitude REAL,
                longitude REAL,
                raw_json TEXT
            )
            """
        )
        self._ensure_column(
            "searches", "campaign_id", "TEXT REFERENCES campaigns(id) ON DELETE CASCADE"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS searches_campaign_id_idx ON searches (campaign_id)")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ranking_results_run_id_idx ON ranking_results (run_id)"
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS ranking_results_query_brand_branch_idx
            ON ranking_results (query, brand, branch)
            """
        )
        self.conn.commit()

    def _ensure_column(self, table: str, column: str, decl: str) -> None:
        columns = {row["name"] for row in self.conn.execute(f"PRAGMA table_info({table})")}
        if column not in columns:
            self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

    def close(self) -> None:
        self.conn.commit()
        self.conn.close()

    def __enter__(self) -> "SqliteResultStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def save_run(self, run_id: str, result: RunResult, meta: Dict[str, Any]) -> None:
        campaign_id = meta.get("campaign_id")
        if campaign_id is not None and self.get_campaign(campaign_id) is None:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
        created_at = meta.get("created_at") or utc_now_iso()
        run = build_run_row(run_id, result, meta, created_at)
        with self.conn:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO searches (
                    id, campaign_id, created_at, source_name, country, language, device_type,
                    geo_grid_json, rank_scope, total_queries, processed_queries, total_results,
                    total_brand_matches, total_local_pack_matches, api_calls_made,
                    processing_time_seconds, status, error_kind, error_message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run["id"],
                    run["campaign_id"],
                    run["created_at"],
                    run["source_name"],
                    run["country"],
                    run["language"],
                    run["device_type"],
                    json.dumps(run["geo_grid"]) if run["geo_grid"] is not None else None,
                    run["rank_scope"],
                    run["total_queries"],
                    run["processed_queries"],
                    run["total_results"],
                    run["total_brand_matches"],
                    run["total_local_pack_matches"],
                    run["api_calls_made"],
                    run["processing_time_seconds"],
                    run["status"],
                    run["error_kind"],
                    run["error_message"],
                ),
            )
            self.conn.execute("DELETE FROM ranking_results WHERE run_id = ?", (run_id,))
            self.conn.executemany(
                """
                INSERT INTO ranking_results (
                    run_id, created_at, query, brand, branch, ranking_position, is_local_pack,
                    local_pack_position, device_type, search_latitude, search_longitude, title,
                    address, rating, category, brand_match, latitude, longitude, raw_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        row["run_id"],
                        row["created_at"],
                        row["query"],
                        row["brand"],
                        row["branch"],
                        row["ranking_position"],
                        int(row["is_local_pack"]),
                        row["local_pack_position"],
                        row["device_type"],
                        row["search_latitude"],
                        row["search_longitude"],
                        row["title"],
                        row["address"],
                        row["rating"],
                        row["category"],
                        int(row["brand_match"]),
                        row["latitude"],
                        row["longitude"],
                        json.dumps(row["raw_data"], ensure_ascii=False),
                    )
                    for row in (build_result_row(run_id, o, created_at) for o in result.observations)
                ],
            )

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM searches WHERE id = ?", (run_id,)).fetchone()
        return self._run_from_row(row) if row else None

    def list_runs(self, limit: int = 50, campaign_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM searches"
        params: List[Any] = []
        if campaign_id is not None:
            sql += " WHERE campaign_id = ?"
            params.append(campaign_id)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(int(limit))
        return [self._run_from_row(r) for r in self.conn.execute(sql, params).fetchall()]

    def create_campaign(
        self,
        name: str,
        tasks: Optional[Iterable[QueryTask]] = None,
        country: Optional[str] = None,
        language: Optional[str] = None,
        description: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        campaign = build_campaign_row(
            new_run_id(), name, tasks, country, language, description, created_at or utc_now_iso()
        )
        try:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO campaigns (
                        id, name, description, query_data_json, country, language,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        campaign["id"],
                        campaign["name"],
                        campaign["description"],
                        _dump_query_data(campaign["query_data"]),
                        campaign["country"],
                        campaign["language"],
                        campaign["created_at"],
                        campaign["updated_at"],
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise InputValidationError(f"Campaign already exists: {campaign['name']}") from exc
        return campaign

    def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM campaigns WHERE id = ?", (campaign_id,)).fetchone()
        return self._campaign_from_row(row) if row else None

    def find_campaign(self, name: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM campaigns WHERE name = ?", ((name or "").strip(),)
        ).fetchone()
        return self._campaign_from_row(row) if row else None

    def list_campaigns(self) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM campaigns ORDER BY created_at DESC, rowid DESC"
        ).fetchall()
        return [self._campaign_from_row(r) for r in rows]

    def update_campaign(
        self,
        campaign_id: str,
        tasks: Optional[Iterable[QueryTask]] = None,
        country: Optional[str] = None,
        language: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        campaign = self.get_campaign(campaign_id)
        if campaign is None:
            return None
        if tasks is not None:
            campaign["query_data"] = tasks_to_query_data(tasks)
        if country is not None:
            campaign["country"] = country
        if language is not None:
            campaign["language"] = language
        if description is not None:
            campaign["description"] = description
        campaign["updated_at"] = utc_now_iso()
        with self.conn:
            self.conn.execute(
                """
                UPDATE campaigns
                SET description = ?, query_data_json = ?, country = ?, language = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    campaign["description"],
                    _dump_query_data(campaign["query_data"]),
                    campaign["country"],
                    campaign["language"],
                    campaign["updated_at"],
                    campaign_id,
                ),
            )
        return campaign

    def delete_campaign(self, campaign_id: str) -> bool:
        with self.conn:
            # Columns added by ALTER TABLE on older files may lack the cascade.
            self.conn.execute(
                "DELETE FROM ranking_results WHERE run_id IN "
                "(SELECT id FROM searches WHERE campaign_id = ?)",
                (campaign_id,),
            )
            self.conn.execute("DELETE FROM searches WHERE campaign_id = ?", (campaign_id,))
            cur = self.conn.execute("DELETE FROM campaigns WHERE id = ?", (campaign_id,))
        return cur.rowcount > 0

    def campaign_summary(self, campaign_id: str) -> Dict[str, Any]:
        campaign = self.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
        count = self.conn.execute(
            "SELECT COUNT(*) FROM searches WHERE campaign_id = ?", (campaign_id,)
        ).fetchone()[0]
        return build_campaign_summary(campaign, self.list_runs(limit=max(1, count), campaign_id=campaign_id))

    def get_results(self, run_id: str) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM ranking_results WHERE run_id = ? ORDER BY id", (run_id,)
        ).fetchall()
        return [self._result_from_row(r) for r in rows]

    def ranking_history(
        self,
        query: str,
        brand: str,
        branch: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        sql = """
            SELECT r.* FROM ranking_results r
            JOIN searches s ON s.id = r.run_id
            WHERE r.query = ? AND r.brand = ? AND r.branch = ?
        """
        params: List[Any] = [query, brand, branch]
        if start is not None:
            sql += " AND s.created_at >= ?"
            params.append(_iso(start))
        if end is not None:
            sql += " AND s.created_at <= ?"
            params.append(_iso(end))
        sql += " ORDER BY s.created_at DESC, s.rowid DESC, r.id"

        per_run: Dict[str, List[Dict[str, Any]]] = {}
        for row in self.conn.execute(sql, params).fetchall():
            per_run.setdefault(row["run_id"], []).append(self._result_from_row(row))
        return build_history(per_run.values())

    def _run_from_row(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        geo_grid_json = data.pop("geo_grid_json", None)
        data["geo_grid"] = json.loads(geo_grid_json) if geo_grid_json else None
        return data

    def _result_from_row(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data.pop("id", None)
        data["is_local_pack"] = bool(data["is_local_pack"])
        data["brand_match"] = bool(data["brand_match"])
        data["raw_data"] = json.loads(data.pop("raw_json") or "{}")
        return data

    def _campaign_from_row(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        query_data_json = data.pop("query_data_json", None)
        data["query_data"] = json.loads(query_data_json) if query_data_json else None
        return data
