import pytest
from anihistory.config import create_store
from anihistory.models import AnimeRecord, UserRecord
from anihistory.service import (CatalogError, ValidationError, NotFound, DuplicateIdentity,
                                DanglingReference, ReferentialConflict, ImmutableField)

@pytest.fixture
def store():
    s = create_store()
    s.users.create(UserRecord(1, "err_user", "s3", "anilist"))
    s.anime.create(AnimeRecord(10, "desc", "s3", "anilist", 50))
    return s

def test_every_error_shares_a_base(store):
    for exc in (ValidationError, NotFound, DuplicateIdentity, DanglingReference,
                ReferentialConflict, ImmutableField):
        assert issubclass(exc, CatalogError)

def test_upsert_raises_for_invalid_user(store):
    with pytest.raises(DanglingReference, match="user 999 does not exist"):
        store.lists.upsert(999, 10)

def test_upsert_raises_for_invalid_anime(store):
    with pytest.raises(DanglingReference, match="anime 999 does not exist"):
        store.lists.upsert(1, 999)

def test_upsert_score_out_of_range(store):
    with pytest.raises(ValidationError, match="score must be 0-100"):
        store.lists.upsert(1, 10, score=101)

def test_upsert_end_before_start(store):
    with pytest.raises(ValidationError, match="end_day must not be before start_day"):
        store.lists.upsert(1, 10, start_day="2024-02-01", end_day="2024-01-01")

def test_upsert_bool_score_rejected(store):
    with pytest.raises(ValidationError, match="score must be an integer"):
        store.lists.upsert(1, 10, score=True)

def test_delete_anime_blocked_by_list_entry(store):
    store.lists.upsert(1, 10)
    with pytest.raises(ReferentialConflict, match="referenced by 1 list entries"):
        store.anime.delete(10)

def test_duplicate_user_message(store):
    with pytest.raises(DuplicateIdentity, match="user 1 already exists"):
        store.users.create(UserRecord(1, "again", "s3", "anilist"))

def test_immutable_identity_message(store):
    with pytest.raises(ImmutableField, match="anime_id cannot be changed"):
        store.anime.update(10, anime_id=11)

def test_create_wrong_record_type(store):
    with pytest.raises(ValidationError, match="expected AnimeRecord"):
        store.anime.create(UserRecord(2, "x", "s3", "anilist"))
