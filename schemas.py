"""
Database Schemas for FYCS Study Hub

Pydantic models for the MongoDB collections `materials`, `subjects`, `users`
and `reports`, plus the request and response shapes built from them.

Timestamps are normalised into timezone-aware UTC datetimes while a document is
parsed, so nothing past this module needs to care how a date was stored.
"""

import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Literal, Annotated

from pydantic import BaseModel, Field, EmailStr, BeforeValidator, field_validator, model_validator

MaterialType = Literal["Notes", "Practicals", "IMP", "Assignment"]
MaterialStatus = Literal["Pending", "Approved"]
Role = Literal["student", "admin"]
ReportStatus = Literal["unread", "resolved"]
ReportReason = Literal["Broken Link", "Wrong File Attached", "Outdated / Old Syllabus", "Other"]

MATERIAL_TYPES = ("Notes", "Practicals", "IMP", "Assignment")
ROLES = ("student", "admin")

# Epoch numbers above this are taken as milliseconds
_MILLIS_THRESHOLD = 1e11


def to_instant(value: Any) -> Optional[datetime]:
    """Normalise a stored timestamp into an aware UTC datetime.

    Accepts datetimes (naive ones are UTC), BSON timestamps and other wrappers
    exposing ``as_datetime``/``to_datetime``/``toDate``, ``{"seconds": ..}``
    mappings, ISO-8601 strings and epoch numbers. Returns None when the value
    can't be read.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    for accessor in ("as_datetime", "to_datetime", "toDate"):
        fn = getattr(value, accessor, None)
        if callable(fn):
            return to_instant(fn())
    if isinstance(value, dict) and "seconds" in value:
        try:
            seconds = float(value["seconds"]) + float(value.get("nanoseconds", 0)) / 1e9
        except (TypeError, ValueError):
            return None
        return to_instant(seconds)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > _MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_instant(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def resolve_created_at(doc: Dict[str, Any]) -> datetime:
    """Creation instant of a document: created_at, then the legacy date field, then now."""
    for key in ("created_at", "date"):
        instant = to_instant(doc.get(key))
        if instant is not None:
            return instant
    return datetime.now(timezone.utc)


Instant = Annotated[Optional[datetime], BeforeValidator(to_instant)]


def _strip_controls(value: str) -> str:
    # tabs and newlines become spaces; NUL and other control characters are dropped
    return "".join(
        " " if ch.isspace() else ch
        for ch in value
        if ch.isspace() or unicodedata.category(ch) != "Cc"
    )


def _required(value: Optional[str], name: str) -> str:
    value = _strip_controls(value or "").strip()
    if not value:
        raise ValueError(f"{name} is required")
    return value


# ----------------------
# Collections
# ----------------------

class Material(BaseModel):
    """Study material hosted on an external link"""
    id: Optional[str] = None
    title: str = ""
    subject_id: str
    sem_id: str
    type: MaterialType
    link: str = ""
    status: MaterialStatus = "Pending"
    views: int = Field(0, ge=0)
    downloads: int = Field(0, ge=0)
    uploaded_by: str = "Student"
    created_at: datetime
    approved_at: Instant = None

    @model_validator(mode="before")
    @classmethod
    def _creation_instant(cls, data: Any):
        if isinstance(data, dict):
            data = dict(data)
            data["created_at"] = resolve_created_at(data)
        return data

    @field_validator("title", "link", "uploaded_by", mode="before")
    @classmethod
    def _text(cls, v):
        return "" if v is None else v

    @field_validator("sem_id", "subject_id", mode="before")
    @classmethod
    def _reference(cls, v):
        return str(v) if isinstance(v, int) else v

    @field_validator("views", "downloads", mode="before")
    @classmethod
    def _counter(cls, v):
        return 0 if v is None else v


class Subject(BaseModel):
    id: Optional[str] = None
    name: str
    sem_id: int
    icon: str = "Book"
    created_at: Instant = None


class Semester(BaseModel):
    id: str
    name: str
    active: bool = True


SEMESTERS = [Semester(id=str(n), name=f"Semester {n}") for n in range(1, 5)]


class User(BaseModel):
    """Users collection schema, keyed by the identity provider uid"""
    uid: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    photo_url: Optional[str] = None
    role: Role = "student"
    is_banned: bool = False
    created_at: Instant = None

    @field_validator("role", mode="before")
    @classmethod
    def _role(cls, v):
        return v if v in ROLES else "student"

    @field_validator("is_banned", mode="before")
    @classmethod
    def _banned(cls, v):
        return bool(v)


class Report(BaseModel):
    """Issue flagged by a user on a material"""
    id: Optional[str] = None
    material_id: str
    material_title: str = ""
    material_link: str = ""
    subject: str = "Unknown"
    semester: str = ""
    reason: str
    status: ReportStatus = "unread"
    created_at: Instant = None


# ----------------------
# Inputs
# ----------------------

class Identity(BaseModel):
    """Claims handed over by the identity provider after sign-in"""
    uid: str = Field(..., min_length=1)
    display_name: Optional[str] = None
    email: EmailStr
    photo_url: Optional[str] = None


class MaterialSubmission(BaseModel):
    title: str
    subject_id: str
    sem_id: str
    type: MaterialType = "Notes"
    link: str
    uploaded_by: str = "Student"

    @field_validator("title", "subject_id", mode="before")
    @classmethod
    def _present(cls, v, info):
        return _required(None if v is None else str(v), info.field_name)

    @field_validator("sem_id", mode="before")
    @classmethod
    def _sem(cls, v):
        return _required(None if v is None else str(v), "sem_id")

    @field_validator("link", mode="before")
    @classmethod
    def _link(cls, v):
        link = _required(v, "link")
        if not link.startswith(("http://", "https://")):
            raise ValueError("link must be an http(s) URL")
        return link


class MaterialUpdate(BaseModel):
    title: Optional[str] = None
    subject_id: Optional[str] = None
    type: Optional[MaterialType] = None
    link: Optional[str] = None

    @field_validator("title", "subject_id", "link", mode="before")
    @classmethod
    def _not_blank(cls, v, info):
        if v is None:
            return v
        return _required(str(v), info.field_name)


class SubjectInput(BaseModel):
    name: str
    sem_id: int = Field(..., ge=1)
    icon: str = "Book"

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, v):
        return _required(v, "name")


class ReportInput(BaseModel):
    material_id: str
    reason: ReportReason
    detail: Optional[str] = None

    def reason_text(self) -> str:
        detail = (self.detail or "").strip()
        if self.reason == "Other" and detail:
            return f"Other: {detail}"
        return self.reason


# ----------------------
# Outputs
# ----------------------

class Stats(BaseModel):
    total_views: int = 0
    total_downloads: int = 0
    pending_requests: int = 0
    total_materials: int = 0
    approved_materials: int = 0
    total_subjects: int = 0
    total_semesters: int = 0


class Result(BaseModel):
    """Outcome of a write intent: success with an optional id, or an error"""
    success: bool
    id: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls, id: Optional[str] = None) -> "Result":
        return cls(success=True, id=id)

    @classmethod
    def fail(cls, error: str, code: str = "gateway") -> "Result":
        return cls(success=False, error=error, code=code)


class HistoryEntry(BaseModel):
    material_id: str
    title: str
    subject: str
    link: str
    type: str
    timestamp: datetime
