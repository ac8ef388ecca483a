"""Persistence gateway for game sessions: local SQLite or a hosted PostgREST API."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional
from urllib.parse import urljoin

import requests

from game_errors import StoreFailure

logger = logging.getLogger(__name__)

TABLE_GAME_STATE = "game_state"
TABLE_PLAYERS = "players"
TABLE_SUBMISSIONS = "submissions"
TABLE_CATEGORIES = "categories"

SCHEMA_VERSION = 1

TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    TABLE_GAME_STATE: (
        "session_id",
        "admin_id",
        "phase",
        "current_round",
        "round_number",
        "selected_players",
        "timer_started_at",
        "timer_duration",
        "round_winners",
        "easy_round_players",
        "current_category_image_descr",
        "created_at",
        "updated_at",
    ),
    TABLE_PLAYERS: ("id", "session_id", "name", "icon", "score", "joined_at"),
    TABLE_SUBMISSIONS: (
        "id",
        "session_id",
        "player_id",
        "image_url",
        "uploaded_at",
        "votes",
        "round_number",
    ),
    TABLE_CATEGORIES: ("id", "round_type", "image_descr", "uploaded_at"),
}

PRIMARY_KEYS: dict[str, tuple[str, ...]] = {
    TABLE_GAME_STATE: ("session_id",),
    TABLE_PLAYERS: ("id", "session_id"),
    TABLE_SUBMISSIONS: ("id",),
    TABLE_CATEGORIES: ("id",),
}

JSON_COLUMNS: dict[str, frozenset[str]] = {
    TABLE_GAME_STATE: frozenset(
        {"selected_players", "round_winners", "easy_round_players"}
    ),
    TABLE_SUBMISSIONS: frozenset({"votes"}),
}

ChangeCallback = Callable[[str, str, list], None]


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any = None

    def matches(self, row: dict) -> bool:
        current = row.get(self.column)
        if self.op == "eq":
            return current == self.value
        if self.op == "neq":
            return current is not None and current != self.value
        if self.op == "in":
            return current in self.value
        if self.op == "is_null":
            return current is None
        if self.op == "eq_or_null":
            return current is None or current == self.value
        raise ValueError(f"Unknown filter operator: {self.op}")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def is_null(column: str) -> Filter:
    return Filter(column, "is_null")


def eq_or_null(column: str, value: Any) -> Filter:
    return Filter(column, "eq_or_null", value)


class GameStore:
    """Table-scoped CRUD plus change subscriptions.

    Every write returns the rows it touched and, once committed, notifies the
    subscribers whose filters match those rows.
    """

    def __init__(self):
        self._subscribers_lock = threading.Lock()
        self._subscribers: dict[int, tuple[str, tuple[Filter, ...], ChangeCallback]] = {}
        self._next_subscription_id = 0

    # ------------------------
    # Operations
    # ------------------------

    def select(
        self,
        table: str,
        filters: Iterable[Filter] = (),
        order_by: Optional[str] = None,
    ) -> list[dict]:
        raise NotImplementedError

    def insert(self, table: str, rows: list[dict]) -> list[dict]:
        raise NotImplementedError

    def upsert(
        self,
        table: str,
        rows: list[dict],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> list[dict]:
        raise NotImplementedError

    def update(self, table: str, patch: dict, filters: Iterable[Filter]) -> list[dict]:
        raise NotImplementedError

    def delete(self, table: str, filters: Iterable[Filter]) -> int:
        raise NotImplementedError

    def subscribe_changes(
        self,
        table: str,
        on_change: ChangeCallback,
        filters: Iterable[Filter] = (),
    ) -> Callable[[], None]:
        self._check_table(table)
        filters = tuple(filters)
        self._check_columns(table, [f.column for f in filters])
        with self._subscribers_lock:
            subscription_id = self._next_subscription_id
            self._next_subscription_id += 1
            self._subscribers[subscription_id] = (table, filters, on_change)

        def _unsubscribe() -> None:
            with self._subscribers_lock:
                self._subscribers.pop(subscription_id, None)

        return _unsubscribe

    # ------------------------
    # Shared helpers
    # ------------------------

    def _notify(self, table: str, event: str, rows: list[dict]) -> None:
        if not rows:
            return
        with self._subscribers_lock:
            listeners = [
                (filters, callback)
                for sub_table, filters, callback in self._subscribers.values()
                if sub_table == table
            ]
        for filters, callback in listeners:
            matched = [row for row in rows if all(f.matches(row) for f in filters)]
            if not matched:
                continue
            try:
                callback(table, event, matched)
            except Exception as exc:
                logger.warning("Change subscriber for %s failed: %s", table, exc)

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in TABLE_COLUMNS:
            raise ValueError(f"Unknown table: {table}")

    @staticmethod
    def _check_columns(table: str, columns: Iterable[str]) -> None:
        known = TABLE_COLUMNS[table]
        unknown = [column for column in columns if column not in known]
        if unknown:
            raise ValueError(f"Unknown columns for {table}: {', '.join(unknown)}")

    @staticmethod
    def _conflict_columns(table: str, on_conflict: str) -> tuple[str, ...]:
        columns = tuple(
            part.strip() for part in str(on_conflict or "").split(",") if part.strip()
        )
        if columns != PRIMARY_KEYS[table]:
            raise ValueError(
                f"{table} upserts must conflict on {','.join(PRIMARY_KEYS[table])}"
            )
        return columns


class SQLiteGameStore(GameStore):
    """Local store; one connection per operation, writes under BEGIN IMMEDIATE."""

    def __init__(self, db_path: str):
        super().__init__()
        self.db_path = str(db_path)
        self.ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _reading(self):
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreFailure(f"Could not open game database: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StoreFailure(f"Game database read failed: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def _writing(self):
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreFailure(f"Could not open game database: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreFailure(f"Game database write failed: {exc}") from exc
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._writing() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS game_state (
                    session_id TEXT PRIMARY KEY,
                    admin_id TEXT,
                    phase TEXT NOT NULL DEFAULT 'lobby'
                        CHECK (phase IN ('lobby', 'selecting_players', 'creating', 'voting', 'results', 'game_over')),
                    current_round TEXT
                        CHECK (current_round IS NULL OR current_round IN ('easy', 'medium', 'hard')),
                    round_number INTEGER NOT NULL DEFAULT 0,
                    selected_players TEXT NOT NULL DEFAULT '[]',
                    timer_started_at INTEGER,
                    timer_duration INTEGER NOT NULL DEFAULT 180,
                    round_winners TEXT NOT NULL DEFAULT '[]',
                    easy_round_players TEXT NOT NULL DEFAULT '[]',
                    current_category_image_descr TEXT,
                    created_at INTEGER NOT NULL DEFAULT 0,
                    updated_at INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS players (
                    id TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    icon TEXT NOT NULL DEFAULT '',
                    score INTEGER NOT NULL DEFAULT 0 CHECK (score >= 0),
                    joined_at INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (id, session_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS submissions (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    player_id TEXT NOT NULL,
                    image_url TEXT NOT NULL,
                    uploaded_at INTEGER NOT NULL DEFAULT 0,
                    votes TEXT NOT NULL DEFAULT '[]',
                    round_number INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    round_type TEXT
                        CHECK (round_type IS NULL OR round_type IN ('easy', 'medium', 'hard')),
                    image_descr TEXT NOT NULL,
                    uploaded_at INTEGER NOT NULL DEFAULT 0
                )
                """
            )

            version = int(conn.execute("PRAGMA user_version").fetchone()[0])
            if version > SCHEMA_VERSION:
                raise StoreFailure(
                    f"Game database schema v{version} is newer than supported v{SCHEMA_VERSION}."
                )
            for table, expected in TABLE_COLUMNS.items():
                columns = {
                    row["name"]
                    for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
                }
                missing = [column for column in expected if column not in columns]
                if missing:
                    raise StoreFailure(
                        f"Table {table} is missing columns: {', '.join(missing)}. "
                        "Migrate the game database before starting.",
                        details={"table": table, "missing": missing},
                    )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_players_session ON players(session_id, joined_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_submissions_session ON submissions(session_id, player_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_categories_round_type ON categories(round_type)"
            )
            if version < SCHEMA_VERSION:
                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    # ------------------------
    # Operations
    # ------------------------

    def select(
        self,
        table: str,
        filters: Iterable[Filter] = (),
        order_by: Optional[str] = None,
    ) -> list[dict]:
        self._check_table(table)
        where_sql, params = self._where(table, filters)
        order_sql = ""
        if order_by:
            descending = order_by.startswith("-")
            column = order_by.lstrip("-")
            self._check_columns(table, [column])
            order_sql = f" ORDER BY {column} {'DESC' if descending else 'ASC'}"

        with self._reading() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table}{where_sql}{order_sql}", params
            ).fetchall()
        return [self._decode_row(table, row) for row in rows]

    def insert(self, table: str, rows: list[dict]) -> list[dict]:
        self._check_table(table)
        if not rows:
            return []
        rowids = []
        with self._writing() as conn:
            for row in rows:
                columns = list(row)
                self._check_columns(table, columns)
                cursor = conn.execute(
                    f"INSERT INTO {table} ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    [self._encode_value(table, column, row[column]) for column in columns],
                )
                rowids.append(cursor.lastrowid)
            inserted = self._rows_by_rowid(conn, table, rowids)
        self._notify(table, "INSERT", inserted)
        return inserted

    def upsert(
        self,
        table: str,
        rows: list[dict],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> list[dict]:
        self._check_table(table)
        conflict_columns = self._conflict_columns(table, on_conflict)
        if not rows:
            return []

        written_keys = []
        with self._writing() as conn:
            for row in rows:
                columns = list(row)
                self._check_columns(table, columns)
                missing_keys = [c for c in conflict_columns if c not in row]
                if missing_keys:
                    raise ValueError(
                        f"Upsert into {table} needs key columns: {', '.join(missing_keys)}"
                    )
                insert_sql = (
                    f"INSERT INTO {table} ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})"
                )
                update_columns = [c for c in columns if c not in conflict_columns]
                if ignore_duplicates or not update_columns:
                    insert_sql += f" ON CONFLICT ({', '.join(conflict_columns)}) DO NOTHING"
                else:
                    assignments = ", ".join(f"{c} = excluded.{c}" for c in update_columns)
                    insert_sql += (
                        f" ON CONFLICT ({', '.join(conflict_columns)}) DO UPDATE SET {assignments}"
                    )
                cursor = conn.execute(
                    insert_sql,
                    [self._encode_value(table, column, row[column]) for column in columns],
                )
                if cursor.rowcount > 0 or not ignore_duplicates:
                    written_keys.append(tuple(row[c] for c in conflict_columns))

            written = []
            for key in written_keys:
                key_sql = " AND ".join(f"{c} = ?" for c in conflict_columns)
                found = conn.execute(
                    f"SELECT * FROM {table} WHERE {key_sql}", list(key)
                ).fetchone()
                if found is not None:
                    written.append(self._decode_row(table, found))
        self._notify(table, "UPSERT", written)
        return written

    def update(self, table: str, patch: dict, filters: Iterable[Filter]) -> list[dict]:
        self._check_table(table)
        if not patch:
            return []
        columns = list(patch)
        self._check_columns(table, columns)
        where_sql, params = self._where(table, filters)

        with self._writing() as conn:
            rowids = [
                row[0]
                for row in conn.execute(
                    f"SELECT rowid FROM {table}{where_sql}", params
                ).fetchall()
            ]
            if not rowids:
                return []
            assignments = ", ".join(f"{column} = ?" for column in columns)
            conn.execute(
                f"UPDATE {table} SET {assignments} "
                f"WHERE rowid IN ({', '.join('?' for _ in rowids)})",
                [self._encode_value(table, column, patch[column]) for column in columns]
                + rowids,
            )
            updated = self._rows_by_rowid(conn, table, rowids)
        self._notify(table, "UPDATE", updated)
        return updated

    def delete(self, table: str, filters: Iterable[Filter]) -> int:
        self._check_table(table)
        where_sql, params = self._where(table, filters)
        with self._writing() as conn:
            doomed = conn.execute(
                f"SELECT rowid AS _rowid, * FROM {table}{where_sql}", params
            ).fetchall()
            if not doomed:
                return 0
            rowids = [row["_rowid"] for row in doomed]
            conn.execute(
                f"DELETE FROM {table} WHERE rowid IN ({', '.join('?' for _ in rowids)})",
                rowids,
            )
        deleted = [self._decode_row(table, row) for row in doomed]
        self._notify(table, "DELETE", deleted)
        return len(deleted)

    # ------------------------
    # Internal helpers
    # ------------------------

    def _where(self, table: str, filters: Iterable[Filter]) -> tuple[str, list]:
        clauses = []
        params: list = []
        for item in filters:
            self._check_columns(table, [item.column])
            column = item.column
            if item.op == "eq" and item.value is None:
                clauses.append(f"{column} IS NULL")
            elif item.op == "eq":
                clauses.append(f"{column} = ?")
                params.append(self._encode_value(table, column, item.value))
            elif item.op == "neq":
                clauses.append(f"{column} != ?")
                params.append(self._encode_value(table, column, item.value))
            elif item.op == "in":
                if not item.value:
                    clauses.append("0")
                    continue
                clauses.append(f"{column} IN ({', '.join('?' for _ in item.value)})")
                params.extend(self._encode_value(table, column, v) for v in item.value)
            elif item.op == "is_null":
                clauses.append(f"{column} IS NULL")
            elif item.op == "eq_or_null":
                clauses.append(f"({column} = ? OR {column} IS NULL)")
                params.append(self._encode_value(table, column, item.value))
            else:
                raise ValueError(f"Unknown filter operator: {item.op}")
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def _rows_by_rowid(
        self, conn: sqlite3.Connection, table: str, rowids: list[int]
    ) -> list[dict]:
        if not rowids:
            return []
        rows = conn.execute(
            f"SELECT * FROM {table} WHERE rowid IN ({', '.join('?' for _ in rowids)})",
            rowids,
        ).fetchall()
        return [self._decode_row(table, row) for row in rows]

    @staticmethod
    def _encode_value(table: str, column: str, value: Any) -> Any:
        if column in JSON_COLUMNS.get(table, ()):
            return json.dumps(list(value or []), ensure_ascii=False)
        return value

    @classmethod
    def _decode_row(cls, table: str, row: sqlite3.Row) -> dict:
        decoded = {}
        for column in TABLE_COLUMNS[table]:
            value = row[column]
            if column in JSON_COLUMNS.get(table, ()):
                value = cls._json_loads_list(value)
            decoded[column] = value
        return decoded

    @staticmethod
    def _json_loads_list(raw_value: Any) -> list[str]:
        try:
            payload = json.loads(raw_value)
            if isinstance(payload, list):
                return [str(item) for item in payload]
        except (json.JSONDecodeError, TypeError):
            pass
        return []


class RestGameStore(GameStore):
    """Hosted store speaking the PostgREST dialect (e.g. a Supabase project).

    Change notifications cover writes made through this instance only.
    """

    def __init__(self, base_url: str, api_key: str, timeout: float = 10):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def select(
        self,
        table: str,
        filters: Iterable[Filter] = (),
        order_by: Optional[str] = None,
    ) -> list[dict]:
        self._check_table(table)
        params = [("select", "*")] + self._filter_params(table, filters)
        if order_by:
            descending = order_by.startswith("-")
            column = order_by.lstrip("-")
            self._check_columns(table, [column])
            params.append(("order", f"{column}.{'desc' if descending else 'asc'}"))
        return self._request("GET", table, params=params)

    def insert(self, table: str, rows: list[dict]) -> list[dict]:
        self._check_table(table)
        if not rows:
            return []
        for row in rows:
            self._check_columns(table, row)
        inserted = self._request(
            "POST", table, payload=rows, prefer="return=representation"
        )
        self._notify(table, "INSERT", inserted)
        return inserted

    def upsert(
        self,
        table: str,
        rows: list[dict],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> list[dict]:
        self._check_table(table)
        conflict_columns = self._conflict_columns(table, on_conflict)
        if not rows:
            return []
        for row in rows:
            self._check_columns(table, row)
        resolution = "ignore-duplicates" if ignore_duplicates else "merge-duplicates"
        written = self._request(
            "POST",
            table,
            params=[("on_conflict", ",".join(conflict_columns))],
            payload=rows,
            prefer=f"resolution={resolution},return=representation",
        )
        self._notify(table, "UPSERT", written)
        return written

    def update(self, table: str, patch: dict, filters: Iterable[Filter]) -> list[dict]:
        self._check_table(table)
        if not patch:
            return []
        self._check_columns(table, patch)
        updated = self._request(
            "PATCH",
            table,
            params=self._filter_params(table, filters),
            payload=patch,
            prefer="return=representation",
        )
        self._notify(table, "UPDATE", updated)
        return updated

    def delete(self, table: str, filters: Iterable[Filter]) -> int:
        self._check_table(table)
        deleted = self._request(
            "DELETE",
            table,
            params=self._filter_params(table, filters),
            prefer="return=representation",
        )
        self._notify(table, "DELETE", deleted)
        return len(deleted)

    # ------------------------
    # Internal helpers
    # ------------------------

    def _filter_params(self, table: str, filters: Iterable[Filter]) -> list[tuple[str, str]]:
        params = []
        for item in filters:
            self._check_columns(table, [item.column])
            column = item.column
            if item.op == "eq" and item.value is None:
                params.append((column, "is.null"))
            elif item.op == "eq":
                params.append((column, f"eq.{self._literal(item.value)}"))
            elif item.op == "neq":
                params.append((column, f"neq.{self._literal(item.value)}"))
            elif item.op == "in":
                values = ",".join(self._quoted(v) for v in item.value)
                params.append((column, f"in.({values})"))
            elif item.op == "is_null":
                params.append((column, "is.null"))
            elif item.op == "eq_or_null":
                params.append(
                    (
                        "or",
                        f"({column}.eq.{self._quoted(item.value)},{column}.is.null)",
                    )
                )
            else:
                raise ValueError(f"Unknown filter operator: {item.op}")
        return params

    @staticmethod
    def _literal(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (list, tuple)):
            # jsonb equality on the list columns
            return json.dumps(list(value), ensure_ascii=False, separators=(",", ":"))
        return str(value)

    @classmethod
    def _quoted(cls, value: Any) -> str:
        text = cls._literal(value)
        if any(ch in text for ch in ',()"'):
            escaped = text.replace("\\", "\\\\").replace('"', '\\"')
            return f'"{escaped}"'
        return text

    def _headers(self, prefer: Optional[str]) -> dict:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[list] = None,
        payload: Any = None,
        prefer: Optional[str] = None,
    ) -> list[dict]:
        url = urljoin(self.base_url + "/", f"rest/v1/{table}")
        logger.info("Game store request: %s %s", method, url)
        try:
            response = requests.request(
                method,
                url,
                params=params,
                json=payload,
                headers=self._headers(prefer),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StoreFailure(f"Game store request failed: {exc}") from exc

        if response.status_code >= 400:
            raise StoreFailure(
                f"Game store returned HTTP {response.status_code} for {method} {table}.",
                details={"status": response.status_code, "body": response.text[:500]},
            )
        if not response.content:
            return []
        try:
            body = response.json()
        except ValueError as exc:
            raise StoreFailure(f"Game store sent invalid JSON for {table}.") from exc
        if isinstance(body, list):
            return body
        return [body] if body else []


def get_game_store(config) -> GameStore:
    if config.supabase_url and config.supabase_key:
        store = RestGameStore(config.supabase_url, config.supabase_key)
        logger.info("Game store: using hosted REST API at %s", store.base_url)
        return store

    logger.info("Game store: using local SQLite database (%s)", config.db_path)
    return SQLiteGameStore(config.db_path)
