# anihistory/service.py
import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from datetime import date, datetime
from typing import Callable, Iterable, List, Mapping, Optional, Tuple

from anihistory.models import AnimeRecord, UserRecord, ListEntry, ListItemView, make_date
from anihistory.repo import open_repo

logger = logging.getLogger(__name__)

DEFAULT_SCORE_RANGE = (0, 100)
DEFAULT_LOCK_TIMEOUT = 5.0

# Exceptions
class CatalogError(Exception):
    """Base class for every rejected store operation."""
    pass

class ValidationError(CatalogError):
    """Raised when a field is malformed or out of range."""
    pass

class DuplicateIdentity(CatalogError):
    """Raised when a create collides with an existing identity."""
    pass

class NotFound(CatalogError):
    """Raised when a lookup targets an absent identity."""
    pass

class DanglingReference(CatalogError):
    """Raised when a list entry would point at a missing user or anime."""
    pass

class ReferentialConflict(CatalogError):
    """Raised when a delete is blocked by list entries still referencing the record."""
    pass

class ImmutableField(CatalogError):
    """Raised on an attempt to change an identity field."""
    pass

class LockTimeout(CatalogError):
    """Raised when a store lock could not be taken within the configured timeout."""
    pass


@contextmanager
def acquire(locks, timeout: float):
    """Take locks in the given order; give up with LockTimeout instead of waiting forever."""
    held = []
    try:
        for lk in locks:
            if not lk.acquire(timeout=timeout):
                raise LockTimeout(f"timed out after {timeout}s waiting for store lock")
            held.append(lk)
        yield
    finally:
        for lk in reversed(held):
            lk.release()


# ---- field checks ----
def _require_id(value, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")

def _require_text(value, name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} required")

def _optional_text(value, name: str) -> None:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{name} must be text")

def _check_score(value, name: str, score_range: Tuple[int, int]) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    lo, hi = score_range
    if value < lo or value > hi:
        raise ValidationError(f"{name} must be {lo}-{hi}")

def _to_date(value, name: str) -> Optional[date]:
    """
    Accept a date (datetimes are truncated), an ISO 'YYYY-MM-DD' string, or a
    {"year", "month", "day"} mapping as list services send it. A mapping with
    any part missing or an impossible day means the date is unknown.
    """
    if value is None:
        return None
    if isinstance(value, Mapping):
        return make_date(value.get("year"), value.get("month"), value.get("day"))
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"{name} is not a valid date: {value!r}")
    raise ValidationError(f"{name} must be a date")


def _sort_key(col: str, id_field: str) -> Callable:
    # None sorts last; ties break on identity
    def key(r):
        v = getattr(r, col)
        if isinstance(v, str):
            v = v.lower()
        return (v is None, v if v is not None else 0, getattr(r, id_field))
    return key


class Query:
    """
    Lazy, restartable scan. Every iteration takes a fresh snapshot from `source`,
    so concurrent writers never disturb an iterator that is already running.
    Setting the `cancel` event stops the scan at the next record.
    """

    def __init__(self, source: Callable[[], list], predicate: Optional[Callable] = None,
                 sort_key: Optional[Callable] = None, offset: int = 0,
                 limit: Optional[int] = None, cancel: Optional[threading.Event] = None):
        if offset < 0 or (limit is not None and limit < 0):
            raise ValidationError("offset and limit must be >= 0")
        self._source = source
        self._predicate = predicate
        self._sort_key = sort_key
        self.offset = offset
        self.limit = limit
        self._cancel = cancel

    def __iter__(self):
        rows = self._source()
        if self._predicate is not None:
            rows = (r for r in rows if self._predicate(r))
        if self._sort_key is not None:
            rows = sorted(rows, key=self._sort_key)
        end = None if self.limit is None else self.offset + self.limit
        for r in itertools.islice(rows, self.offset, end):
            if self._cancel is not None and self._cancel.is_set():
                logger.debug("scan cancelled by caller")
                return
            yield r

    def all(self) -> list:
        return list(self)


class _OwnerCollection:
    """Shared behaviour of the anime catalog and the user directory."""
    kind = ""
    table = ""
    id_field = ""
    record_type = None
    sort_keys: Tuple[str, ...] = ()

    def __init__(self, repo=None, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self._repo = repo if repo is not None else open_repo(self.table)
        self._lock = threading.RLock()
        self._dependents = None
        self.lock_timeout = lock_timeout
        logger.debug("%s initialized with repo %s", type(self).__name__, type(self._repo).__name__)

    def _attach(self, dependents) -> None:
        if self._dependents is not None and self._dependents is not dependents:
            raise RuntimeError(f"{type(self).__name__} already has a list store attached")
        self._dependents = dependents

    def _validate(self, record) -> None:
        raise NotImplementedError

    def __len__(self) -> int:
        return len(self._repo)

    def exists(self, key: int) -> bool:
        _require_id(key, self.id_field)
        return self._repo.get(key) is not None

    def create(self, record):
        """Store a new record; the identity is supplied by the caller."""
        if not isinstance(record, self.record_type):
            raise ValidationError(f"expected {self.record_type.__name__}")
        self._validate(record)
        key = getattr(record, self.id_field)
        with acquire([self._lock], self.lock_timeout):
            if self._repo.get(key) is not None:
                logger.warning("create: %s %s already exists", self.kind, key)
                raise DuplicateIdentity(f"{self.kind} {key} already exists")
            self._repo.put(record)
        logger.info("Created %s id=%s", self.kind, key)
        return record

    def get(self, key: int):
        _require_id(key, self.id_field)
        r = self._repo.get(key)
        if r is None:
            logger.debug("get: %s %s not found", self.kind, key)
            raise NotFound(f"{self.kind} not found")
        return r

    def update(self, key: int, **changes):
        """Replace the given fields; every other field keeps its current value."""
        with acquire([self._lock], self.lock_timeout):
            current = self.get(key)
            if self.id_field in changes:
                if changes[self.id_field] != key:
                    logger.warning("update: attempt to change %s of %s %s", self.id_field, self.kind, key)
                    raise ImmutableField(f"{self.id_field} cannot be changed")
                changes.pop(self.id_field)
            allowed = {f.name for f in fields(self.record_type)}
            unknown = sorted(set(changes) - allowed)
            if unknown:
                raise ValidationError(f"unknown field(s): {', '.join(unknown)}")
            updated = replace(current, **changes)
            self._validate(updated)
            self._repo.put(updated)
        logger.info("Updated %s id=%s fields=%s", self.kind, key, sorted(changes))
        return updated

    def delete(self, key: int) -> None:
        """
        Delete a record. When list entries still reference it the attached list
        store either rejects the delete or cascades, depending on its policy.
        """
        locks = [self._lock]
        if self._dependents is not None:
            locks.append(self._dependents._lock)
        with acquire(locks, self.lock_timeout):
            self.get(key)
            if self._dependents is not None:
                self._dependents._release(self.id_field, key)
            self._repo.delete(key)
        logger.info("Deleted %s id=%s", self.kind, key)

    def _query(self, predicate, order_by: str, offset: int, limit: Optional[int], cancel) -> Query:
        if order_by not in self.sort_keys:
            raise ValidationError(f"cannot order by {order_by!r}")
        sort_key = None if order_by == self.id_field else _sort_key(order_by, self.id_field)
        return Query(self._repo.values, predicate, sort_key, offset, limit, cancel)


class AnimeCatalog(_OwnerCollection):
    kind = "anime"
    table = "anime"
    id_field = "anime_id"
    record_type = AnimeRecord
    sort_keys = ("anime_id", "average", "native", "romaji", "english")

    def __init__(self, repo=None, score_range: Tuple[int, int] = DEFAULT_SCORE_RANGE,
                 lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        super().__init__(repo, lock_timeout)
        self.score_range = tuple(score_range)

    def _validate(self, a: AnimeRecord) -> None:
        _require_id(a.anime_id, "anime_id")
        _require_text(a.description, "description")
        _require_text(a.cover_s3, "cover_s3")
        _require_text(a.cover_anilist, "cover_anilist")
        _check_score(a.average, "average", self.score_range)
        for name in ("native", "romaji", "english"):
            _optional_text(getattr(a, name), name)

    def list(self, q: Optional[str] = None, min_average: Optional[int] = None,
             max_average: Optional[int] = None, order_by: str = "anime_id",
             offset: int = 0, limit: Optional[int] = None,
             cancel: Optional[threading.Event] = None) -> Query:
        """
        Anime matching a case-insensitive title substring (any of native, romaji,
        english) and an inclusive average range. Unrated anime never match a range.
        """
        ql = q.lower() if q else None

        def match(a: AnimeRecord) -> bool:
            if ql and not any(ql in t.lower() for t in a.titles()):
                return False
            if min_average is not None and (a.average is None or a.average < min_average):
                return False
            if max_average is not None and (a.average is None or a.average > max_average):
                return False
            return True

        return self._query(match, order_by, offset, limit, cancel)


class UserDirectory(_OwnerCollection):
    kind = "user"
    table = "users"
    id_field = "user_id"
    record_type = UserRecord
    sort_keys = ("user_id", "name")

    def _validate(self, u: UserRecord) -> None:
        _require_id(u.user_id, "user_id")
        _require_text(u.name, "name")
        _require_text(u.avatar_s3, "avatar_s3")
        _require_text(u.avatar_anilist, "avatar_anilist")

    def find_all_by_name(self, name: str) -> List[UserRecord]:
        """Display names are not unique; every user with this exact name, by user_id."""
        return [u for u in self._repo.values() if u.name == name]

    def find_by_name(self, name: str) -> UserRecord:
        """The lowest user_id carrying this exact display name."""
        matches = self.find_all_by_name(name)
        if not matches:
            raise NotFound("user not found")
        return matches[0]

    def list(self, q: Optional[str] = None, order_by: str = "user_id", offset: int = 0,
             limit: Optional[int] = None, cancel: Optional[threading.Event] = None) -> Query:
        ql = q.lower() if q else None
        match = (lambda u: ql in u.name.lower()) if ql else None
        return self._query(match, order_by, offset, limit, cancel)


class ListStore:
    """
    Per-user list entries keyed by (user_id, anime_id).
    Lock order is always users -> anime -> lists, so the owner checks in
    upsert and the dependent checks in owner deletes cannot interleave.
    """

    def __init__(self, anime: AnimeCatalog, users: UserDirectory, repo=None,
                 score_range: Tuple[int, int] = DEFAULT_SCORE_RANGE,
                 cascade_deletes: bool = False, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self._anime = anime
        self._users = users
        self._repo = repo if repo is not None else open_repo("lists")
        self._lock = threading.RLock()
        self.score_range = tuple(score_range)
        self.cascade_deletes = bool(cascade_deletes)
        self.lock_timeout = lock_timeout
        anime._attach(self)
        users._attach(self)
        logger.debug("ListStore initialized (cascade_deletes=%s)", self.cascade_deletes)

    def __len__(self) -> int:
        return len(self._repo)

    def _release(self, owner_field: str, key: int) -> None:
        # caller holds the owner lock and self._lock
        entries = self._repo.values(**{owner_field: key})
        if not entries:
            return
        if not self.cascade_deletes:
            logger.warning("delete blocked for %s=%s: %d list entries", owner_field, key, len(entries))
            raise ReferentialConflict(f"{owner_field}={key} is referenced by {len(entries)} list entries")
        removed = self._repo.delete_where(**{owner_field: key})
        logger.info("Cascade removed %d list entries for %s=%s", removed, owner_field, key)

    def upsert(self, user_id: int, anime_id: int, user_title: Optional[str] = None,
               start_day=None, end_day=None, score: Optional[int] = None) -> ListEntry:
        """
        Create the entry or fully replace its mutable fields.
        Fields left out are stored as None. Dates may be date objects, ISO strings
        or {"year", "month", "day"} mappings.
        """
        _require_id(user_id, "user_id")
        _require_id(anime_id, "anime_id")
        _optional_text(user_title, "user_title")
        start = _to_date(start_day, "start_day")
        end = _to_date(end_day, "end_day")
        if start is not None and end is not None and end < start:
            logger.warning("upsert: end_day %s before start_day %s", end, start)
            raise ValidationError("end_day must not be before start_day")
        _check_score(score, "score", self.score_range)
        entry = ListEntry(user_id, anime_id, user_title, start, end, score)

        with acquire([self._users._lock, self._anime._lock, self._lock], self.lock_timeout):
            if not self._users.exists(user_id):
                logger.warning("upsert: user %s does not exist", user_id)
                raise DanglingReference(f"user {user_id} does not exist")
            if not self._anime.exists(anime_id):
                logger.warning("upsert: anime %s does not exist", anime_id)
                raise DanglingReference(f"anime {anime_id} does not exist")
            created = self._repo.get(entry.key) is None
            self._repo.put(entry)
        logger.info("%s list entry user=%s anime=%s score=%s",
                    "Added" if created else "Replaced", user_id, anime_id, score)
        return entry

    def get(self, user_id: int, anime_id: int) -> ListEntry:
        _require_id(user_id, "user_id")
        _require_id(anime_id, "anime_id")
        e = self._repo.get((user_id, anime_id))
        if e is None:
            logger.debug("get: list entry user=%s anime=%s not found", user_id, anime_id)
            raise NotFound("list entry not found")
        return e

    def remove(self, user_id: int, anime_id: int) -> None:
        _require_id(user_id, "user_id")
        _require_id(anime_id, "anime_id")
        with acquire([self._lock], self.lock_timeout):
            if not self._repo.delete((user_id, anime_id)):
                raise NotFound("list entry not found")
        logger.info("Removed list entry user=%s anime=%s", user_id, anime_id)

    def list_for_user(self, user_id: int, offset: int = 0, limit: Optional[int] = None,
                      cancel: Optional[threading.Event] = None) -> Query:
        """Entries of one user ordered by anime_id; NotFound when the user does not exist."""
        self._users.get(user_id)
        return Query(lambda: self._repo.values(user_id=user_id),
                     offset=offset, limit=limit, cancel=cancel)

    def list_for_anime(self, anime_id: int, offset: int = 0, limit: Optional[int] = None,
                       cancel: Optional[threading.Event] = None) -> Query:
        """Entries for one anime ordered by user_id; NotFound when the anime does not exist."""
        self._anime.get(anime_id)
        return Query(lambda: self._repo.values(anime_id=anime_id),
                     offset=offset, limit=limit, cancel=cancel)

    def list_for_username(self, name: str) -> List[ListItemView]:
        """
        Lists joined with the user and anime records, looked up by display name.
        Names are not unique: rows of every matching user are returned, ordered
        by (user_id, anime_id).
        """
        users = self._users.find_all_by_name(name)
        if not users:
            logger.debug("list_for_username: no user named %s", name)
        out = []
        for user in users:
            for e in self._repo.values(user_id=user.user_id):
                try:
                    anime = self._anime.get(e.anime_id)
                except NotFound:
                    # deleted between the two reads
                    continue
                out.append(ListItemView(user, anime, e))
        return out

    def export_list(self, name: str) -> Optional[dict]:
        """Export rows for a user's list, or None when the user has no entries."""
        views = self.list_for_username(name)
        if not views:
            return None
        user = views[0].user
        logger.info("Exported %d list entries for user %s", len(views), user.user_id)
        return {"id": user.name, "avatar": user.avatar_s3,
                "list": [v.as_dict() for v in views]}

    def prune(self, user_id: int, keep: Iterable[int]) -> List[int]:
        """Remove every entry of the user whose anime_id is not in `keep`; returns removed ids."""
        keep = set(keep)
        removed = []
        with acquire([self._users._lock, self._lock], self.lock_timeout):
            self._users.get(user_id)
            for e in self._repo.values(user_id=user_id):
                if e.anime_id not in keep:
                    self._repo.delete(e.key)
                    removed.append(e.anime_id)
        if removed:
            logger.info("Pruned %d list entries for user %s", len(removed), user_id)
        return removed


@dataclass
class Store:
    anime: AnimeCatalog
    users: UserDirectory
    lists: ListStore
