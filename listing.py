"""
Listing, filtering and sorting of materials.

Everything here is a pure function of its arguments: inputs are never mutated
and a new list is returned on every call.
"""

import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from schemas import Material, User

ALL = "All"

SORT_ALIASES = {"a-z": "title-asc", "az": "title-asc"}


@dataclass(frozen=True)
class QueryParams:
    status: str = "Approved"
    type: str = ALL
    subject_id: str = ALL
    sem_id: str = ALL
    search: str = ""
    sort: str = "newest"


def _title(material: Material) -> str:
    return material.title or ""


def title_key(title: str):
    """Case- and accent-insensitive key, so "Éclair" sorts between "apple" and "zebra"."""
    decomposed = unicodedata.normalize("NFKD", title or "")
    base = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return (base.casefold(), title or "")


def _matches(material: Material, needle: str, subject_names: Optional[Dict[str, str]]) -> bool:
    if needle in _title(material).casefold():
        return True
    if subject_names is None:
        return False
    if needle in material.type.casefold():
        return True
    return needle in subject_names.get(material.subject_id, "").casefold()


def sort_materials(materials: Iterable[Material], sort: str) -> List[Material]:
    """Sort by one of newest, oldest, title-asc or most-views.

    An unknown key keeps the input order. Ties keep input order too.
    """
    items = list(materials)
    sort = SORT_ALIASES.get(sort, sort)
    if sort == "newest":
        return sorted(items, key=lambda m: m.created_at, reverse=True)
    if sort == "oldest":
        return sorted(items, key=lambda m: m.created_at)
    if sort == "title-asc":
        return sorted(items, key=lambda m: title_key(m.title))
    if sort == "most-views":
        return sorted(items, key=lambda m: m.views, reverse=True)
    return items


def query(materials: Iterable[Material], params: QueryParams = QueryParams(),
          subject_names: Optional[Dict[str, str]] = None) -> List[Material]:
    """Filter and sort a material collection for display.

    Filters run in order status, type, subject, semester, search. "All" on an
    axis means no filtering on it. The search is a case-insensitive substring
    match on the title; passing ``subject_names`` (subject id -> name) widens it
    to the material type and subject name.
    """
    result = [
        m for m in materials
        if (params.status == ALL or m.status == params.status)
        and (params.type == ALL or m.type == params.type)
        and (params.subject_id == ALL or m.subject_id == params.subject_id)
        and (params.sem_id == ALL or m.sem_id == str(params.sem_id))
    ]
    needle = (params.search or "").strip().casefold()
    if needle:
        result = [m for m in result if _matches(m, needle, subject_names)]
    return sort_materials(result, params.sort)


def search_users(users: Iterable[User], text: str = "") -> List[User]:
    """Admin user search on email and display name.

    Users are de-duplicated on uid or email, keeping the first seen.
    """
    seen_uids = set()
    seen_emails = set()
    unique = []
    for user in users:
        email = (user.email or "").casefold()
        if user.uid in seen_uids or (email and email in seen_emails):
            continue
        seen_uids.add(user.uid)
        if email:
            seen_emails.add(email)
        unique.append(user)

    needle = (text or "").strip().casefold()
    if not needle:
        return unique
    return [
        u for u in unique
        if needle in (u.email or "").casefold() or needle in (u.display_name or "").casefold()
    ]
