"""
FlowB — Record Store
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

Small key-value style facade over SQLite used by the verification core:
filtered get / insert / upsert / update / delete, plus the conditional
update the sponsorship state machine relies on.

Every write opens its own connection (WAL mode), so several worker
processes can share the database file. Idempotency of state transitions is
enforced by `conditional_update` (UPDATE ... WHERE status = 'pending'),
never by in-process flags.
"""

import json
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from logger import db_logger

SCHEMA = {
    "sponsorships": """
        CREATE TABLE IF NOT EXISTS sponsorships (
            id TEXT PRIMARY KEY,
            sponsor_user_id TEXT NOT NULL,
            platform TEXT NOT NULL,
            target_type TEXT NOT NULL CHECK (target_type IN ('event', 'location')),
            target_id TEXT NOT NULL,
            amount_usdc TEXT NOT NULL,
            verified_amount_usdc TEXT,
            tx_hash TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'verified', 'rejected')),
            reject_reason TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            verified_at TEXT
        )
    """,
    "checkins": """
        CREATE TABLE IF NOT EXISTS checkins (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            platform TEXT,
            crew_id TEXT NOT NULL,
            location_id TEXT,
            venue_name TEXT,
            status TEXT NOT NULL DEFAULT 'here' CHECK (status IN ('here', 'heading', 'leaving')),
            latitude REAL,
            longitude REAL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
    """,
    "locations": """
        CREATE TABLE IF NOT EXISTS locations (
            id TEXT PRIMARY KEY,
            code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            latitude REAL,
            longitude REAL,
            proximity_radius_m INTEGER DEFAULT 100,
            sponsor_amount REAL DEFAULT 0,
            sponsor_label TEXT,
            active INTEGER DEFAULT 1
        )
    """,
    "crew_members": """
        CREATE TABLE IF NOT EXISTS crew_members (
            crew_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            PRIMARY KEY (crew_id, user_id)
        )
    """,
    "user_points": """
        CREATE TABLE IF NOT EXISTS user_points (
            user_id TEXT NOT NULL,
            platform TEXT NOT NULL,
            total_points INTEGER NOT NULL DEFAULT 0,
            first_actions TEXT NOT NULL DEFAULT '{}',
            milestone_level INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT,
            PRIMARY KEY (user_id, platform)
        )
    """,
    "points_ledger": """
        CREATE TABLE IF NOT EXISTS points_ledger (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            platform TEXT NOT NULL,
            action TEXT NOT NULL,
            points INTEGER NOT NULL,
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        )
    """,
    "sessions": """
        CREATE TABLE IF NOT EXISTS sessions (
            user_id TEXT PRIMARY KEY,
            display_name TEXT,
            updated_at TEXT
        )
    """,
}

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_sponsorships_status ON sponsorships (status)",
    "CREATE INDEX IF NOT EXISTS idx_sponsorships_target ON sponsorships (target_type, target_id)",
    "CREATE INDEX IF NOT EXISTS idx_checkins_dedup ON checkins (user_id, crew_id, location_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_locations_active ON locations (active)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_user_action ON points_ledger (user_id, platform, action, created_at)",
]

OPERATORS = {"=", "!=", ">", ">=", "<", "<="}


class DuplicateRecord(Exception):
    """Insert violated a UNIQUE / PRIMARY KEY constraint"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_iso(moment: Optional[datetime] = None) -> str:
    """Fixed-width UTC timestamp, so string comparison orders correctly"""
    moment = moment or utc_now()
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _prepare(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value  # str Enums
    return value


class RecordStore:
    """SQLite-backed record store"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._columns: Dict[str, set] = {}
        self.init_db()

    def connect(self) -> sqlite3.Connection:
        """Connection with WAL mode for concurrent readers/writers"""
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    def init_db(self):
        with closing(self.connect()) as conn:
            with conn:
                for ddl in SCHEMA.values():
                    conn.execute(ddl)
                for ddl in INDEXES:
                    conn.execute(ddl)
            for table in SCHEMA:
                self._columns[table] = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
        db_logger.info(f"✓ Database initialised: {self.db_path}")

    # ------------------------------------------------------------------
    # SQL building
    # ------------------------------------------------------------------

    def _check(self, table: str, columns: Iterable[str]):
        if table not in self._columns:
            raise ValueError(f"Unknown table: {table}")
        unknown = set(columns) - self._columns[table]
        if unknown:
            raise ValueError(f"Unknown column(s) for {table}: {sorted(unknown)}")

    def _where(self, table: str, filters: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
        self._check(table, filters.keys() if filters else [])
        if not filters:
            return "", []

        clauses, params = [], []
        for column, condition in filters.items():
            if isinstance(condition, tuple):
                op, value = condition
                if op not in OPERATORS:
                    raise ValueError(f"Unsupported operator: {op}")
                clauses.append(f"{column} {op} ?")
                params.append(_prepare(value))
            elif isinstance(condition, list):
                if not condition:
                    clauses.append("0")
                    continue
                clauses.append(f"{column} IN ({', '.join('?' for _ in condition)})")
                params.extend(_prepare(v) for v in condition)
            elif condition is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(_prepare(condition))
        return " WHERE " + " AND ".join(clauses), params

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        where, params = self._where(table, filters)
        sql = f"SELECT * FROM {table}{where}"
        if order_by:
            column, _, direction = order_by.partition(" ")
            self._check(table, [column])
            sql += f" ORDER BY {column} {'DESC' if direction.upper() == 'DESC' else 'ASC'}"
        if limit:
            sql += f" LIMIT {int(limit)}"

        with closing(self.connect()) as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def get_one(self, table: str, filters: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        rows = self.get(table, filters, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self._check(table, row.keys())
        columns = list(row.keys())
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})"

        try:
            with closing(self.connect()) as conn:
                with conn:
                    cursor = conn.execute(sql, [_prepare(row[c]) for c in columns])
        except sqlite3.IntegrityError as e:
            raise DuplicateRecord(str(e)) from e

        stored = dict(row)
        if "id" not in stored and "id" in self._columns[table]:
            stored["id"] = cursor.lastrowid
        return stored

    def upsert(self, table: str, row: Dict[str, Any], conflict: Tuple[str, ...]):
        """INSERT ... ON CONFLICT(conflict) DO UPDATE the remaining columns"""
        self._check(table, list(row.keys()) + list(conflict))
        columns = list(row.keys())
        updates = [c for c in columns if c not in conflict]
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT({', '.join(conflict)}) "
        )
        sql += f"DO UPDATE SET {', '.join(f'{c} = excluded.{c}' for c in updates)}" if updates else "DO NOTHING"

        with closing(self.connect()) as conn:
            with conn:
                conn.execute(sql, [_prepare(row[c]) for c in columns])

    def update(self, table: str, filters: Dict[str, Any], values: Dict[str, Any]) -> int:
        """Returns number of rows changed"""
        if not filters:
            raise ValueError("update() without filters is not allowed")
        self._check(table, values.keys())
        where, params = self._where(table, filters)
        columns = list(values.keys())
        sql = f"UPDATE {table} SET {', '.join(f'{c} = ?' for c in columns)}{where}"

        with closing(self.connect()) as conn:
            with conn:
                cursor = conn.execute(sql, [_prepare(values[c]) for c in columns] + params)
                return cursor.rowcount

    def conditional_update(
        self,
        table: str,
        filters: Dict[str, Any],
        expected: Dict[str, Any],
        values: Dict[str, Any],
    ) -> bool:
        """
        Apply `values` only if the row still matches `expected`.
        True iff this call changed exactly one row.
        """
        return self.update(table, {**filters, **expected}, values) == 1

    def increment(self, table: str, filters: Dict[str, Any], column: str, delta: float) -> int:
        """Atomic column += delta"""
        self._check(table, [column])
        where, params = self._where(table, filters)
        sql = f"UPDATE {table} SET {column} = COALESCE({column}, 0) + ?{where}"

        with closing(self.connect()) as conn:
            with conn:
                return conn.execute(sql, [_prepare(delta)] + params).rowcount

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        if not filters:
            raise ValueError("delete() without filters is not allowed")
        where, params = self._where(table, filters)

        with closing(self.connect()) as conn:
            with conn:
                return conn.execute(f"DELETE FROM {table}{where}", params).rowcount
