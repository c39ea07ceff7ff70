import sqlite3
from datetime import date

import pytest

from anihistory.config import create_store
from anihistory.models import AnimeRecord, UserRecord, ListEntry
from anihistory.repo import SqliteRepo, RepoError, init_schema
from anihistory.service import NotFound, ReferentialConflict, DanglingReference, ValidationError

# --- Fixtures ------------------------------------------------------------

@pytest.fixture
def db_path(tmp_path):
    """Temporary SQLite database path"""
    p = tmp_path / "test_db.sqlite"
    return str(p)

@pytest.fixture
def store(db_path):
    return create_store({"database": db_path})

def seed(store):
    store.users.create(UserRecord(5, "int_alice", "s3://u5", "anilist://u5"))
    store.anime.create(AnimeRecord(1, "First", "s3://a1", "anilist://a1", 70, None, "Ichi", None))
    store.anime.create(AnimeRecord(2, "Second", "s3://a2", "anilist://a2", None, "ニ", None, "Two"))

# --- Integration tests ---------------------------------------------------

def test_schema_has_three_tables(db_path):
    init_schema(db_path)
    conn = sqlite3.connect(db_path)
    names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    conn.close()
    assert {"anime", "users", "lists"} <= names

def test_create_and_get_persist(store):
    seed(store)
    e = store.lists.upsert(5, 1, user_title="Mine", start_day=date(2023, 5, 1),
                           end_day=date(2023, 6, 1), score=85)
    assert store.users.get(5).name == "int_alice"
    assert store.anime.get(2).native == "ニ"
    assert store.lists.get(5, 1) == e

def test_persistence_across_store_instances(db_path):
    """Data written by one store must be visible to another opened on the same file."""
    s1 = create_store({"database": db_path})
    seed(s1)
    s1.lists.upsert(5, 2, score=40)

    s2 = create_store({"database": db_path})
    assert [u.name for u in s2.users.list()] == ["int_alice"]
    assert [a.anime_id for a in s2.anime.list(q="two")] == [2]
    assert s2.lists.get(5, 2) == ListEntry(5, 2, None, None, None, 40)

def test_upsert_replaces_row(store, db_path):
    seed(store)
    store.lists.upsert(5, 1, user_title="Old", score=10)
    store.lists.upsert(5, 1, score=20)
    conn = sqlite3.connect(db_path)
    rows = conn.execute("SELECT user_title, score FROM lists WHERE user_id=5 AND anime_id=1").fetchall()
    conn.close()
    assert rows == [(None, 20)]

def test_update_owner_in_db(store):
    seed(store)
    store.users.update(5, name="renamed")
    store.anime.update(1, average=99)
    assert store.users.get(5).name == "renamed"
    assert store.anime.get(1).average == 99

def test_referential_rules_in_db(db_path):
    s = create_store({"database": db_path})
    seed(s)
    s.lists.upsert(5, 1)
    with pytest.raises(DanglingReference):
        s.lists.upsert(5, 3)
    with pytest.raises(ReferentialConflict):
        s.users.delete(5)

    cascading = create_store({"database": db_path, "cascade_deletes": True})
    cascading.users.delete(5)
    with pytest.raises(NotFound):
        cascading.lists.get(5, 1)
    assert len(cascading.lists) == 0

def test_list_for_user_and_anime_in_db(store):
    seed(store)
    store.users.create(UserRecord(3, "bob", "s3://u3", "anilist://u3"))
    store.lists.upsert(5, 2)
    store.lists.upsert(5, 1)
    store.lists.upsert(3, 1)
    assert [e.anime_id for e in store.lists.list_for_user(5)] == [1, 2]
    assert [e.user_id for e in store.lists.list_for_anime(1)] == [3, 5]

def test_export_from_db(store):
    seed(store)
    store.lists.upsert(5, 1, start_day="2021-01-01")
    exported = store.lists.export_list("int_alice")
    assert exported["list"][0]["start_day"] == "2021-01-01"
    assert exported["list"][0]["cover"] == "s3://a1"

def test_sqlite_repo_rejects_unknown_table(db_path):
    with pytest.raises(RepoError):
        SqliteRepo(db_path, "studios")

def test_sqlite_repo_rejects_unknown_filter(db_path):
    repo = SqliteRepo(db_path, "lists")
    with pytest.raises(RepoError):
        repo.values(status="watching")

def test_failed_cascade_leaves_every_entry(db_path):
    s = create_store({"database": db_path, "cascade_deletes": True})
    seed(s)
    s.lists.upsert(5, 1)
    s.lists.upsert(5, 2)
    # make the second row refuse deletion so the cascade fails part way
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TRIGGER keep_two BEFORE DELETE ON lists WHEN old.anime_id = 2 "
                 "BEGIN SELECT RAISE(ABORT, 'row is pinned'); END")
    conn.commit()
    conn.close()

    with pytest.raises(RepoError):
        s.users.delete(5)
    assert len(s.lists) == 2
    assert s.users.exists(5)
    assert [e.anime_id for e in s.lists.list_for_user(5)] == [1, 2]

def test_delete_where_removes_matching_rows(db_path):
    repo = SqliteRepo(db_path, "lists")
    for anime_id in (1, 2):
        repo.put(ListEntry(5, anime_id))
    repo.put(ListEntry(6, 1))
    assert repo.delete_where(user_id=5) == 2
    assert repo.values() == [ListEntry(6, 1)]
    with pytest.raises(RepoError):
        repo.delete_where()

def test_string_keys_rejected_in_db(store):
    seed(store)
    with pytest.raises(ValidationError):
        store.users.get("5")
    with pytest.raises(ValidationError):
        store.lists.get("5", 1)
