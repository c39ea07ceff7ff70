# anihistory/models.py
from dataclasses import dataclass
from datetime import date
from typing import NamedTuple, Optional


def make_date(year: Optional[int], month: Optional[int], day: Optional[int]) -> Optional[date]:
    """Build a date only when every part is known; partial dates count as unknown."""
    if year is None or month is None or day is None:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _iso(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d is not None else None


def _parse_iso(s) -> Optional[date]:
    return date.fromisoformat(s) if s else None


class ListKey(NamedTuple):
    user_id: int
    anime_id: int


@dataclass(frozen=True)
class AnimeRecord:
    anime_id: int
    description: str
    cover_s3: str
    cover_anilist: str
    average: Optional[int] = None  # aggregate score, None -> not rated yet
    native: Optional[str] = None
    romaji: Optional[str] = None
    english: Optional[str] = None

    def titles(self):
        return [t for t in (self.native, self.romaji, self.english) if t]

    def to_row(self) -> tuple:
        return (self.anime_id, self.description, self.cover_s3, self.cover_anilist,
                self.average, self.native, self.romaji, self.english)

    @classmethod
    def from_row(cls, r) -> "AnimeRecord":
        return cls(r["anime_id"], r["description"], r["cover_s3"], r["cover_anilist"],
                   r["average"], r["native"], r["romaji"], r["english"])


@dataclass(frozen=True)
class UserRecord:
    user_id: int
    name: str
    avatar_s3: str
    avatar_anilist: str

    def to_row(self) -> tuple:
        return (self.user_id, self.name, self.avatar_s3, self.avatar_anilist)

    @classmethod
    def from_row(cls, r) -> "UserRecord":
        return cls(r["user_id"], r["name"], r["avatar_s3"], r["avatar_anilist"])


@dataclass(frozen=True)
class ListEntry:
    user_id: int
    anime_id: int
    user_title: Optional[str] = None  # personal override of the display title
    start_day: Optional[date] = None
    end_day: Optional[date] = None
    score: Optional[int] = None

    @property
    def key(self) -> ListKey:
        return ListKey(self.user_id, self.anime_id)

    def to_row(self) -> tuple:
        return (self.user_id, self.anime_id, self.user_title,
                _iso(self.start_day), _iso(self.end_day), self.score)

    @classmethod
    def from_row(cls, r) -> "ListEntry":
        return cls(r["user_id"], r["anime_id"], r["user_title"],
                   _parse_iso(r["start_day"]), _parse_iso(r["end_day"]), r["score"])


@dataclass(frozen=True)
class ListItemView:
    """One row of a user's list joined with the user and anime it points at."""
    user: UserRecord
    anime: AnimeRecord
    entry: ListEntry

    def as_dict(self) -> dict:
        return {
            "id": self.anime.anime_id,
            "user_title": self.entry.user_title,
            "start_day": _iso(self.entry.start_day),
            "end_day": _iso(self.entry.end_day),
            "score": self.entry.score,
            "average": self.anime.average,
            "native": self.anime.native,
            "romaji": self.anime.romaji,
            "english": self.anime.english,
            "description": self.anime.description,
            "cover": self.anime.cover_s3,
        }
