"""
SQLite-backed analysis record store.

One row per analysis in `analyses`; the step history lives in an append-only
`analysis_steps` table so appending never rewrites earlier entries. Every
operation opens its own short-lived connection, so concurrent pipeline runs
share nothing but the database file.
"""
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel

from ..errors import AnalysisNotFoundError, PersistenceError, StatusTransitionError
from ..models import ANALYSIS_STATUSES, STATUS_TRANSITIONS, AnalysisRecord, ProcessingStep, utcnow

logger = logging.getLogger(__name__)

# record field -> (column, stored as JSON)
FIELD_COLUMNS = {
    "user": ("user_id", False),
    "imageUrl": ("image_url", False),
    "imageBase64": ("image_base64", False),
    "crop": ("crop", False),
    "location": ("location_json", True),
    "status": ("status", False),
    "detection": ("detection_json", True),
    "recommendations": ("recommendations_json", True),
    "aiProvider": ("ai_provider", False),
    "error": ("error", False),
    "finalResult": ("final_result_json", True),
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS analyses (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    image_url TEXT,
    image_base64 TEXT,
    crop TEXT,
    location_json TEXT,
    status TEXT NOT NULL,
    detection_json TEXT,
    recommendations_json TEXT,
    ai_provider TEXT,
    error TEXT,
    final_result_json TEXT,
    raw_responses_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS analysis_steps (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    analysis_id TEXT NOT NULL,
    step TEXT NOT NULL,
    status TEXT NOT NULL,
    result_json TEXT,
    error TEXT,
    timestamp TEXT NOT NULL,
    FOREIGN KEY(analysis_id) REFERENCES analyses(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_analyses_user_created ON analyses(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_analyses_status ON analyses(status);
CREATE INDEX IF NOT EXISTS idx_steps_analysis ON analysis_steps(analysis_id, seq);
"""


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=_json_default)


def _loads(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


class AnalysisStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False, isolation_level=None)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open analysis database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"Analysis store error: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)

    # -- writes ---------------------------------------------------------------

    def create_record(self, fields: Dict[str, Any]) -> str:
        """Insert a new analysis in `pending` state and return its id."""
        analysis_id = uuid.uuid4().hex
        now = utcnow().isoformat()
        values = {"status": "pending"}
        values.update(fields)
        if values["status"] not in ANALYSIS_STATUSES:
            raise ValueError(f"Unknown analysis status: {values['status']}")

        columns = ["id", "raw_responses_json", "created_at", "updated_at"]
        params: List[Any] = [analysis_id, "{}", now, now]
        for key, value in values.items():
            column, as_json = self._column_for(key)
            columns.append(column)
            params.append(_dumps(value) if as_json else value)

        sql = f"INSERT INTO analyses ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})"
        with self._transaction() as conn:
            conn.execute(sql, params)
        logger.debug("[Store] created analysis %s", analysis_id)
        return analysis_id

    def append_step(
        self,
        analysis_id: str,
        step: Union[ProcessingStep, Dict[str, Any]],
        fields: Optional[Dict[str, Any]] = None,
        expected_status: Optional[str] = None,
    ) -> None:
        """Append a step, optionally applying `fields` in the same transaction.

        Either both the step and the field update land or neither does.
        """
        if not isinstance(step, ProcessingStep):
            step = ProcessingStep(**step)
        with self._transaction() as conn:
            row = self._require_row(conn, analysis_id)
            conn.execute(
                "INSERT INTO analysis_steps (analysis_id, step, status, result_json, error, timestamp) VALUES (?, ?, ?, ?, ?, ?)",
                (analysis_id, step.step, step.status, _dumps(step.result), step.error, step.timestamp.isoformat()),
            )
            self._apply_fields(conn, row, fields or {}, expected_status)

    def update_fields(self, analysis_id: str, fields: Dict[str, Any], expected_status: Optional[str] = None) -> None:
        """Update record fields by id.

        A status change must follow STATUS_TRANSITIONS. With `expected_status`
        the write only happens if the record is still in that status, checked
        inside the write transaction.
        """
        if not fields:
            return
        with self._transaction() as conn:
            row = self._require_row(conn, analysis_id)
            self._apply_fields(conn, row, fields, expected_status)

    def _apply_fields(
        self,
        conn: sqlite3.Connection,
        row: sqlite3.Row,
        fields: Dict[str, Any],
        expected_status: Optional[str],
    ) -> None:
        analysis_id = row["id"]
        current = row["status"]
        target = fields.get("status")
        if expected_status is not None and current != expected_status:
            raise StatusTransitionError(analysis_id, current, target or expected_status)
        if target is not None and target not in STATUS_TRANSITIONS.get(current, set()):
            raise StatusTransitionError(analysis_id, current, target)

        assignments: List[str] = []
        params: List[Any] = []
        for key, value in fields.items():
            column, as_json = self._column_for(key)
            assignments.append(f"{column} = ?")
            params.append(_dumps(value) if as_json else value)
        assignments.append("updated_at = ?")
        params.append(utcnow().isoformat())
        params.append(analysis_id)
        conn.execute(f"UPDATE analyses SET {', '.join(assignments)} WHERE id = ?", params)

    def set_raw_response(self, analysis_id: str, key: str, value: Any) -> None:
        """Merge one entry into the record's `rawResponses` audit payload."""
        with self._transaction() as conn:
            row = self._require_row(conn, analysis_id)
            raw = _loads(row["raw_responses_json"]) or {}
            raw[key] = json.loads(json.dumps(value, default=_json_default))
            conn.execute(
                "UPDATE analyses SET raw_responses_json = ?, updated_at = ? WHERE id = ?",
                (json.dumps(raw), utcnow().isoformat(), analysis_id),
            )

    def delete_record(self, analysis_id: str, user: Optional[str] = None) -> None:
        with self._transaction() as conn:
            row = self._require_row(conn, analysis_id)
            if user is not None and row["user_id"] != user:
                raise AnalysisNotFoundError(analysis_id)
            conn.execute("DELETE FROM analysis_steps WHERE analysis_id = ?", (analysis_id,))
            conn.execute("DELETE FROM analyses WHERE id = ?", (analysis_id,))

    # -- reads ----------------------------------------------------------------

    def get_record(self, analysis_id: str) -> AnalysisRecord:
        with self._connect() as conn:
            row = self._require_row(conn, analysis_id)
            steps = conn.execute(
                "SELECT step, status, result_json, error, timestamp FROM analysis_steps WHERE analysis_id = ? ORDER BY seq",
                (analysis_id,),
            ).fetchall()
        return self._to_record(row, steps)

    def list_records(
        self,
        user: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AnalysisRecord], int]:
        """Newest first, without step history or raw responses."""
        where, params = self._filters(user, status)
        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM analyses{where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM analyses{where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        records = [self._to_record(r, [], include_raw=False) for r in rows]
        return records, total

    def count_by_status(self, user: Optional[str] = None) -> Dict[str, int]:
        where, params = self._filters(user, None)
        with self._connect() as conn:
            rows = conn.execute(f"SELECT status, COUNT(*) AS n FROM analyses{where} GROUP BY status", params).fetchall()
        counts = {status: 0 for status in ANALYSIS_STATUSES}
        for r in rows:
            counts[r["status"]] = r["n"]
        counts["total"] = sum(counts[s] for s in ANALYSIS_STATUSES)
        return counts

    # -- helpers --------------------------------------------------------------

    @staticmethod
    def _column_for(key: str) -> Tuple[str, bool]:
        try:
            return FIELD_COLUMNS[key]
        except KeyError:
            raise ValueError(f"Unknown analysis field: {key}") from None

    @staticmethod
    def _filters(user: Optional[str], status: Optional[str]) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if user is not None:
            clauses.append("user_id = ?")
            params.append(user)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @staticmethod
    def _require_row(conn: sqlite3.Connection, analysis_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM analyses WHERE id = ?", (analysis_id,)).fetchone()
        if row is None:
            raise AnalysisNotFoundError(analysis_id)
        return row

    @staticmethod
    def _to_record(row: sqlite3.Row, steps: List[sqlite3.Row], include_raw: bool = True) -> AnalysisRecord:
        return AnalysisRecord(
            id=row["id"],
            user=row["user_id"],
            imageUrl=row["image_url"],
            imageBase64=row["image_base64"],
            crop=row["crop"],
            location=_loads(row["location_json"]),
            status=row["status"],
            detection=_loads(row["detection_json"]),
            recommendations=_loads(row["recommendations_json"]),
            processingSteps=[
                ProcessingStep(
                    step=s["step"],
                    status=s["status"],
                    result=_loads(s["result_json"]),
                    error=s["error"],
                    timestamp=s["timestamp"],
                )
                for s in steps
            ],
            aiProvider=row["ai_provider"],
            error=row["error"],
            finalResult=_loads(row["final_result_json"]),
            rawResponses=(_loads(row["raw_responses_json"]) or {}) if include_raw else {},
            createdAt=row["created_at"],
            updatedAt=row["updated_at"],
        )
