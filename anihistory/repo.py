# anihistory/repo.py
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional

from anihistory.models import AnimeRecord, UserRecord, ListEntry

# --- Exceptions ---
class RepoError(Exception):
    pass

# --- Schema (one table per collection, no declared foreign keys) ---
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS anime (
    anime_id INTEGER PRIMARY KEY,
    description TEXT NOT NULL,
    cover_s3 TEXT NOT NULL,
    cover_anilist TEXT NOT NULL,
    average SMALLINT,
    native TEXT,
    romaji TEXT,
    english TEXT
);

CREATE TABLE IF NOT EXISTS lists (
    user_id INTEGER NOT NULL,
    anime_id INTEGER NOT NULL,
    user_title TEXT,
    start_day DATE,
    end_day DATE,
    score SMALLINT,
    PRIMARY KEY(user_id, anime_id)
);

CREATE TABLE IF NOT EXISTS users (
    user_id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    avatar_s3 TEXT NOT NULL,
    avatar_anilist TEXT NOT NULL
);
"""

# table -> (record type, key columns, all columns in row order)
TABLES = {
    "anime": (AnimeRecord, ("anime_id",),
              ("anime_id", "description", "cover_s3", "cover_anilist",
               "average", "native", "romaji", "english")),
    "users": (UserRecord, ("user_id",),
              ("user_id", "name", "avatar_s3", "avatar_anilist")),
    "lists": (ListEntry, ("user_id", "anime_id"),
              ("user_id", "anime_id", "user_title", "start_day", "end_day", "score")),
}


def init_schema(db_path: str) -> None:
    """Create the anime, users and lists tables if they do not exist yet."""
    d = os.path.dirname(db_path)
    if d:
        os.makedirs(d, exist_ok=True)
    con = sqlite3.connect(db_path)
    try:
        con.executescript(SCHEMA_SQL)
        con.commit()
    finally:
        con.close()


# --- SQLite repo (one instance per table) ---
class SqliteRepo:
    def __init__(self, db_path: str, table: str):
        if table not in TABLES:
            raise RepoError(f"unknown table {table!r}")
        self.db_path = db_path
        self.table = table
        self.record_type, self.key_cols, self.cols = TABLES[table]
        init_schema(db_path)

    @contextmanager
    def conn(self):
        con = sqlite3.connect(self.db_path)
        con.row_factory = sqlite3.Row
        try:
            yield con
            con.commit()
        except sqlite3.Error as e:
            con.rollback()
            raise RepoError(f"{self.table}: {e}") from e
        finally:
            con.close()

    def _key_params(self, key) -> tuple:
        return tuple(key) if len(self.key_cols) > 1 else (key,)

    def _key_where(self) -> str:
        return " AND ".join(f"{k} = ?" for k in self.key_cols)

    def get(self, key):
        with self.conn() as c:
            r = c.execute(f"SELECT * FROM {self.table} WHERE {self._key_where()}",
                          self._key_params(key)).fetchone()
            return self.record_type.from_row(r) if r else None

    def put(self, record) -> None:
        placeholders = ", ".join("?" for _ in self.cols)
        updates = ", ".join(f"{c} = excluded.{c}" for c in self.cols if c not in self.key_cols)
        sql = (f"INSERT INTO {self.table} ({', '.join(self.cols)}) VALUES ({placeholders}) "
               f"ON CONFLICT ({', '.join(self.key_cols)}) DO UPDATE SET {updates}")
        with self.conn() as c:
            c.execute(sql, record.to_row())

    def delete(self, key) -> bool:
        with self.conn() as c:
            cur = c.execute(f"DELETE FROM {self.table} WHERE {self._key_where()}",
                            self._key_params(key))
            return cur.rowcount > 0

    def delete_where(self, **where) -> int:
        """Delete every row matching the column filters in a single transaction."""
        if not where:
            raise RepoError("delete_where needs at least one filter")
        for col in where:
            if col not in self.cols:
                raise RepoError(f"unknown column {col!r}")
        sql = f"DELETE FROM {self.table} WHERE " + " AND ".join(f"{col} = ?" for col in where)
        with self.conn() as c:
            return c.execute(sql, tuple(where.values())).rowcount

    def values(self, **where) -> list:
        """Snapshot of all records matching column equality filters, in key order."""
        params = []
        sql = f"SELECT * FROM {self.table}"
        if where:
            for col in where:
                if col not in self.cols:
                    raise RepoError(f"unknown column {col!r}")
            sql += " WHERE " + " AND ".join(f"{col} = ?" for col in where)
            params = list(where.values())
        sql += " ORDER BY " + ", ".join(self.key_cols)
        with self.conn() as c:
            rows = c.execute(sql, tuple(params)).fetchall()
            return [self.record_type.from_row(r) for r in rows]

    def __len__(self) -> int:
        with self.conn() as c:
            return c.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]


# --- In-memory repo (default backend, used by unit tests) ---
class InMemoryRepo:
    def __init__(self, key_of: Callable):
        self._key_of = key_of
        self._rows: Dict = {}
        self._lock = threading.Lock()

    def get(self, key):
        return self._rows.get(key)

    def put(self, record) -> None:
        with self._lock:
            self._rows[self._key_of(record)] = record

    def delete(self, key) -> bool:
        with self._lock:
            return self._rows.pop(key, None) is not None

    def delete_where(self, **where) -> int:
        if not where:
            raise RepoError("delete_where needs at least one filter")
        with self._lock:
            doomed = [k for k, r in self._rows.items()
                      if all(getattr(r, col) == v for col, v in where.items())]
            for k in doomed:
                del self._rows[k]
            return len(doomed)

    def values(self, **where) -> List:
        with self._lock:
            res = list(self._rows.values())
        if where:
            res = [r for r in res if all(getattr(r, k) == v for k, v in where.items())]
        res.sort(key=self._key_of)
        return res

    def __len__(self) -> int:
        return len(self._rows)


def open_repo(table: str, db_path: Optional[str] = None):
    """Backend for one collection: SQLite when a path is given, memory otherwise."""
    if db_path:
        return SqliteRepo(db_path, table)
    key_cols = TABLES[table][1]
    if len(key_cols) == 1:
        col = key_cols[0]
        return InMemoryRepo(lambda r: getattr(r, col))
    return InMemoryRepo(lambda r: r.key)
