"""SQLite-backed stores shared across requests.

Holds the rate-limit request log, the learned-knowledge table, the usage/audit
log and per-customer AI settings behind one connection and one process lock.
"""
from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterable, List, Optional, Tuple

from report_agent.core.config import get_settings
from report_agent.core.logging import logger


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


def _json_loads(value: str | None) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        loaded = json.loads(value)
    except json.JSONDecodeError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


@dataclass(frozen=True)
class CustomerAISettings:
    customer_id: str
    ai_enabled: bool
    daily_cap_usd: float


@dataclass
class UsageRecord:
    """One audit row per request, written on every terminal path."""

    user_id: str
    customer_id: str
    status: str
    session_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    latency_ms: float = 0.0
    tool_turns: int = 0
    error_message: Optional[str] = None
    created_at: str = field(default_factory=_utc_now_iso)


class StateStore:
    """Durable state for rate limiting, customer memory and usage accounting."""

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | None = None) -> None:
        path = (db_path or get_settings().state_db_path or "").strip()
        self._db_path = Path(path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS rate_limit_events (
                    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    customer_id TEXT,
                    occurred_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_rate_limit_user_time
                    ON rate_limit_events (user_id, occurred_at);

                CREATE INDEX IF NOT EXISTS idx_rate_limit_time
                    ON rate_limit_events (occurred_at);

                CREATE TABLE IF NOT EXISTS knowledge (
                    knowledge_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    customer_id TEXT NOT NULL,
                    knowledge_type TEXT NOT NULL,
                    key TEXT NOT NULL,
                    label TEXT NOT NULL,
                    definition TEXT NOT NULL,
                    source TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    needs_review INTEGER NOT NULL,
                    is_active INTEGER NOT NULL,
                    metadata_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (customer_id, knowledge_type, key)
                );

                CREATE INDEX IF NOT EXISTS idx_knowledge_review
                    ON knowledge (needs_review, is_active);

                CREATE TABLE IF NOT EXISTS usage_log (
                    usage_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    customer_id TEXT NOT NULL,
                    session_id TEXT,
                    status TEXT NOT NULL,
                    input_tokens INTEGER NOT NULL,
                    output_tokens INTEGER NOT NULL,
                    cost_usd REAL NOT NULL,
                    latency_ms REAL NOT NULL,
                    tool_turns INTEGER NOT NULL,
                    error_message TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_usage_customer_time
                    ON usage_log (customer_id, created_at);

                CREATE TABLE IF NOT EXISTS customer_ai_settings (
                    customer_id TEXT PRIMARY KEY,
                    ai_enabled INTEGER NOT NULL,
                    daily_cap_usd REAL NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    # Rate-limit request log

    def count_requests_since(self, user_id: str, since: float) -> Tuple[int, Optional[float]]:
        """Return the number of requests after ``since`` and the oldest of them."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT COUNT(*) AS total, MIN(occurred_at) AS oldest
                FROM rate_limit_events
                WHERE user_id = ? AND occurred_at > ?
                """,
                (user_id, since),
            ).fetchone()
        return int(row["total"] or 0), row["oldest"]

    def record_request(self, user_id: str, customer_id: Optional[str], occurred_at: float) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO rate_limit_events (user_id, customer_id, occurred_at) VALUES (?, ?, ?)",
                (user_id, customer_id, occurred_at),
            )
            self._conn.commit()

    def prune_requests(self, before: float) -> int:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM rate_limit_events WHERE occurred_at <= ?",
                (before,),
            )
            self._conn.commit()
            return cursor.rowcount

    # Learned knowledge

    def upsert_knowledge(
        self,
        customer_id: str,
        knowledge_type: str,
        key: str,
        label: str,
        definition: str,
        source: str,
        confidence: float,
        needs_review: bool,
        is_active: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Insert or replace a knowledge row; an active row is only replaced by another active one."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO knowledge (
                    customer_id, knowledge_type, key, label, definition, source,
                    confidence, needs_review, is_active, metadata_json, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (customer_id, knowledge_type, key) DO UPDATE SET
                    label = excluded.label,
                    definition = excluded.definition,
                    source = excluded.source,
                    confidence = excluded.confidence,
                    needs_review = excluded.needs_review,
                    is_active = excluded.is_active,
                    metadata_json = excluded.metadata_json,
                    updated_at = excluded.updated_at
                WHERE excluded.is_active = 1 OR knowledge.is_active = 0
                """,
                (
                    customer_id,
                    knowledge_type,
                    key,
                    label,
                    definition,
                    source,
                    float(confidence),
                    int(bool(needs_review)),
                    int(bool(is_active)),
                    _json_dumps(metadata or {}),
                    _utc_now_iso(),
                ),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT knowledge_id FROM knowledge WHERE customer_id = ? AND knowledge_type = ? AND key = ?",
                (customer_id, knowledge_type, key),
            ).fetchone()
        return int(row["knowledge_id"])

    def insert_knowledge_if_absent(
        self,
        customer_id: str,
        knowledge_type: str,
        key: str,
        label: str,
        definition: str,
        source: str,
        confidence: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """Add a pending-review item; an existing row for the key is left as it is."""
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO knowledge (
                    customer_id, knowledge_type, key, label, definition, source,
                    confidence, needs_review, is_active, metadata_json, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, 0, ?, ?)
                ON CONFLICT (customer_id, knowledge_type, key) DO NOTHING
                """,
                (
                    customer_id,
                    knowledge_type,
                    key,
                    label,
                    definition,
                    source,
                    float(confidence),
                    _json_dumps(metadata or {}),
                    _utc_now_iso(),
                ),
            )
            self._conn.commit()
            if cursor.rowcount == 0:
                return None
            return int(cursor.lastrowid)

    def list_knowledge(
        self,
        customer_id: str,
        knowledge_types: Optional[Iterable[str]] = None,
        active_only: bool = False,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM knowledge WHERE customer_id = ?"
        params: List[Any] = [customer_id]
        types = [item for item in (knowledge_types or []) if item]
        if types:
            query += f" AND knowledge_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY knowledge_type, key"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._knowledge_row(row) for row in rows]

    def list_pending_knowledge(self, customer_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = "SELECT * FROM knowledge WHERE needs_review = 1 AND is_active = 0"
        params: List[Any] = []
        if customer_id:
            query += " AND customer_id = ?"
            params.append(customer_id)
        query += " ORDER BY updated_at DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._knowledge_row(row) for row in rows]

    def activate_knowledge(self, knowledge_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE knowledge SET is_active = 1, needs_review = 0, updated_at = ? WHERE knowledge_id = ?",
                (_utc_now_iso(), knowledge_id),
            )
            self._conn.commit()
            if cursor.rowcount == 0:
                return None
            row = self._conn.execute(
                "SELECT * FROM knowledge WHERE knowledge_id = ?",
                (knowledge_id,),
            ).fetchone()
        return self._knowledge_row(row)

    @staticmethod
    def _knowledge_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "knowledge_id": int(row["knowledge_id"]),
            "customer_id": row["customer_id"],
            "knowledge_type": row["knowledge_type"],
            "key": row["key"],
            "label": row["label"],
            "definition": row["definition"],
            "source": row["source"],
            "confidence": float(row["confidence"]),
            "needs_review": bool(row["needs_review"]),
            "is_active": bool(row["is_active"]),
            "metadata": _json_loads(row["metadata_json"]),
            "updated_at": row["updated_at"],
        }

    # Usage / audit log

    def record_usage(self, record: UsageRecord) -> int:
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO usage_log (
                    user_id, customer_id, session_id, status, input_tokens, output_tokens,
                    cost_usd, latency_ms, tool_turns, error_message, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.user_id,
                    record.customer_id,
                    record.session_id,
                    record.status,
                    int(record.input_tokens),
                    int(record.output_tokens),
                    float(record.cost_usd),
                    float(record.latency_ms),
                    int(record.tool_turns),
                    record.error_message,
                    record.created_at,
                ),
            )
            self._conn.commit()
            return int(cursor.lastrowid)

    def list_usage(self, customer_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM usage_log WHERE customer_id = ? ORDER BY usage_id DESC LIMIT ?",
                (customer_id, max(1, int(limit))),
            ).fetchall()
        return [dict(row) for row in rows]

    def spent_today(self, customer_id: str, now: Optional[datetime] = None) -> float:
        """Total cost recorded for the customer since midnight UTC."""
        current = now or datetime.now(timezone.utc)
        day_start = current.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        with self._lock:
            row = self._conn.execute(
                "SELECT COALESCE(SUM(cost_usd), 0) AS spent FROM usage_log WHERE customer_id = ? AND created_at >= ?",
                (customer_id, day_start.isoformat()),
            ).fetchone()
        return float(row["spent"] or 0.0)

    # Customer AI settings

    def get_customer_settings(self, customer_id: str) -> Optional[CustomerAISettings]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM customer_ai_settings WHERE customer_id = ?",
                (customer_id,),
            ).fetchone()
        if row is None:
            return None
        return CustomerAISettings(
            customer_id=row["customer_id"],
            ai_enabled=bool(row["ai_enabled"]),
            daily_cap_usd=float(row["daily_cap_usd"]),
        )

    def set_customer_settings(self, customer_id: str, ai_enabled: bool, daily_cap_usd: float) -> CustomerAISettings:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO customer_ai_settings (customer_id, ai_enabled, daily_cap_usd, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (customer_id) DO UPDATE SET
                    ai_enabled = excluded.ai_enabled,
                    daily_cap_usd = excluded.daily_cap_usd,
                    updated_at = excluded.updated_at
                """,
                (customer_id, int(bool(ai_enabled)), float(daily_cap_usd), _utc_now_iso()),
            )
            self._conn.commit()
        logger.info(
            "Customer AI settings updated",
            customer_id=customer_id,
            ai_enabled=ai_enabled,
            daily_cap_usd=daily_cap_usd,
        )
        return CustomerAISettings(customer_id=customer_id, ai_enabled=ai_enabled, daily_cap_usd=daily_cap_usd)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
