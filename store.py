"""
Central state store.

Holds live mirrors of the materials, subjects and users collections, derives
statistics from them and exposes write intents that go straight to the
gateway. Local state is only ever replaced by snapshots pushed from the
gateway; writes never patch the mirrors directly.
"""

import logging
from datetime import datetime, timezone
from functools import partial, wraps
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from access import AccessPolicy
from database import MongoGateway
from errors import PortalError, InvalidInputError, DuplicateMaterialError, NotFoundError
from listing import QueryParams, query
from schemas import (
    SEMESTERS,
    ROLES,
    Identity,
    Material,
    MaterialSubmission,
    MaterialUpdate,
    Report,
    ReportInput,
    Result,
    Semester,
    Stats,
    Subject,
    SubjectInput,
    User,
)

logger = logging.getLogger(__name__)

MATERIALS = "materials"
SUBJECTS = "subjects"
USERS = "users"
REPORTS = "reports"

UserListener = Callable[[Dict[str, User]], None]


def validation_message(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        field = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        if msg.startswith("Value error, "):
            parts.append(msg[len("Value error, "):])
        else:
            parts.append(f"{field}: {msg}" if field else msg)
    return "; ".join(parts)


def write_intent(action: str):
    """Turn a mutator into one that returns a Result and never raises."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs) -> Result:
            try:
                return fn(*args, **kwargs)
            except PortalError as e:
                logger.error("Error %s: %s", action, e.message)
                return Result.fail(e.message, e.code)
            except ValidationError as e:
                message = validation_message(e)
                logger.warning("Rejected %s: %s", action, message)
                return Result.fail(message, "validation")
            except Exception:
                logger.exception("Error %s", action)
                return Result.fail(f"Failed to {action}", "gateway")
        return wrapper
    return decorator


class Readiness:
    """Tracks which subscriptions have delivered their first snapshot (or failed)."""

    def __init__(self, names: Iterable[str]):
        self._waiting = set(names)

    def mark(self, name: str):
        self._waiting.discard(name)

    def is_ready(self, name: str) -> bool:
        return name not in self._waiting

    @property
    def all_ready(self) -> bool:
        return not self._waiting


class StudyStore:
    def __init__(self, gateway: MongoGateway, policy: Optional[AccessPolicy] = None,
                 semesters: Iterable[Semester] = SEMESTERS):
        self.gateway = gateway
        self.policy = policy or AccessPolicy()
        self._semesters: Tuple[Semester, ...] = tuple(semesters)
        self._materials: Tuple[Material, ...] = ()
        self._subjects: Tuple[Subject, ...] = ()
        self._users: Dict[str, User] = {}
        self._subscriptions = []
        self._user_listeners: List[UserListener] = []
        self.readiness = Readiness((MATERIALS, SUBJECTS, USERS))
        self._stats = self._compute_stats()

    # ----------------------
    # Subscriptions
    # ----------------------

    def subscribe(self):
        if self._subscriptions:
            return
        self._subscriptions = [
            self.gateway.subscribe(MATERIALS, self._on_materials, partial(self._on_error, MATERIALS)),
            self.gateway.subscribe(SUBJECTS, self._on_subjects, partial(self._on_error, SUBJECTS)),
            self.gateway.subscribe(USERS, self._on_users, partial(self._on_error, USERS)),
        ]

    def close(self):
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        self._user_listeners = []

    @property
    def loading(self) -> bool:
        return not self.readiness.all_ready

    def _parse(self, model, docs: List[Dict[str, Any]], name: str) -> list:
        items = []
        for doc in docs:
            try:
                items.append(model.model_validate(doc))
            except ValidationError as e:
                logger.warning("Skipping malformed %s document %s (%d errors)", name, doc.get("id"), e.error_count())
        return items

    def _on_materials(self, docs: List[Dict[str, Any]]):
        self._materials = tuple(self._parse(Material, docs, MATERIALS))
        self._stats = self._compute_stats()
        self.readiness.mark(MATERIALS)

    def _on_subjects(self, docs: List[Dict[str, Any]]):
        self._subjects = tuple(self._parse(Subject, docs, SUBJECTS))
        self._stats = self._compute_stats()
        self.readiness.mark(SUBJECTS)

    def _on_users(self, docs: List[Dict[str, Any]]):
        for doc in docs:
            doc.setdefault("uid", doc.get("id"))
        self._users = {u.uid: u for u in self._parse(User, docs, USERS)}
        self.readiness.mark(USERS)
        for listener in list(self._user_listeners):
            listener(dict(self._users))

    def _on_error(self, name: str, error: Exception):
        # the mirror stays as it was; readiness still clears so callers never wait forever
        logger.error("Error listening to %s: %s", name, error)
        self.readiness.mark(name)

    def add_user_listener(self, listener: UserListener) -> Callable[[], None]:
        self._user_listeners.append(listener)

        def remove():
            try:
                self._user_listeners.remove(listener)
            except ValueError:
                pass
        return remove

    # ----------------------
    # Derived state
    # ----------------------

    def _compute_stats(self) -> Stats:
        approved = [m for m in self._materials if m.status == "Approved"]
        return Stats(
            total_views=sum(m.views for m in approved),
            total_downloads=sum(m.downloads for m in approved),
            pending_requests=sum(1 for m in self._materials if m.status == "Pending"),
            total_materials=len(self._materials),
            approved_materials=len(approved),
            total_subjects=len(self._subjects),
            total_semesters=len(self._semesters),
        )

    @property
    def stats(self) -> Stats:
        return self._stats

    @property
    def materials(self) -> Tuple[Material, ...]:
        return self._materials

    @property
    def subjects(self) -> Tuple[Subject, ...]:
        return self._subjects

    @property
    def semesters(self) -> Tuple[Semester, ...]:
        return self._semesters

    @property
    def users(self) -> Tuple[User, ...]:
        return tuple(self._users.values())

    def is_admin(self, email: Optional[str], role: Optional[str]) -> bool:
        return self.policy.is_admin(email, role)

    # ----------------------
    # Read accessors
    # ----------------------

    def get_material(self, material_id: str) -> Optional[Material]:
        return next((m for m in self._materials if m.id == material_id), None)

    def get_subject_by_id(self, subject_id: str) -> Optional[Subject]:
        return next((s for s in self._subjects if s.id == subject_id), None)

    def get_semester_by_id(self, sem_id: str) -> Optional[Semester]:
        return next((s for s in self._semesters if s.id == str(sem_id)), None)

    def get_user(self, uid: str) -> Optional[User]:
        return self._users.get(uid)

    def subject_names(self) -> Dict[str, str]:
        return {s.id: s.name for s in self._subjects}

    def get_materials_by_subject(self, subject_id: str) -> List[Material]:
        return [m for m in self._materials if m.subject_id == subject_id and m.status == "Approved"]

    def get_materials_by_semester(self, sem_id: str) -> List[Material]:
        return [m for m in self._materials if m.sem_id == str(sem_id) and m.status == "Approved"]

    def get_pending_materials(self) -> List[Material]:
        return [m for m in self._materials if m.status == "Pending"]

    def get_approved_materials(self) -> List[Material]:
        return [m for m in self._materials if m.status == "Approved"]

    def get_recent_materials(self, limit: int = 5) -> List[Material]:
        return query(self._materials, QueryParams(sort="newest"))[:max(limit, 0)]

    def get_subjects_by_semester(self, sem_id) -> List[Subject]:
        try:
            wanted = int(sem_id)
        except (TypeError, ValueError):
            return []
        return [s for s in self._subjects if s.sem_id == wanted]

    def list_reports(self) -> List[Report]:
        """Reports, newest first. Read from the gateway on demand, not mirrored."""
        try:
            docs = self.gateway.find(REPORTS, {}, sort=[("created_at", -1)])
        except PortalError as e:
            logger.error("Error fetching reports: %s", e.message)
            return []
        return self._parse(Report, docs, REPORTS)

    # ----------------------
    # Identity
    # ----------------------

    def resolve_identity(self, identity: Identity) -> User:
        """Fetch the user document for a signed-in identity, creating it on first sign-in."""
        doc = self.gateway.get(USERS, identity.uid)
        if doc is not None:
            doc.setdefault("uid", identity.uid)
            return User.model_validate(doc)

        user = User(
            uid=identity.uid,
            display_name=identity.display_name,
            email=str(identity.email),
            photo_url=identity.photo_url,
            role="student",
            is_banned=False,
        )
        self.gateway.insert(USERS, user.model_dump(exclude={"created_at"}), doc_id=identity.uid)
        logger.info("Created user %s with role student", identity.uid)
        doc = self.gateway.get(USERS, identity.uid)
        return User.model_validate(doc) if doc else user

    # ----------------------
    # Materials
    # ----------------------

    def _ensure_unique(self, title: str, subject_id: str, exclude_id: Optional[str] = None):
        # check-then-insert is not transactional; two racing submissions can both pass
        matches = self.gateway.find(MATERIALS, {"title": title, "subject_id": subject_id})
        if any(doc["id"] != exclude_id for doc in matches):
            raise DuplicateMaterialError(f'Duplicate material: "{title}" already exists for this subject')

    @write_intent("add material")
    def add_material(self, data: Union[MaterialSubmission, Dict[str, Any]]) -> Result:
        submission = MaterialSubmission.model_validate(data)
        self._ensure_unique(submission.title, submission.subject_id)
        doc = submission.model_dump()
        doc.update(status="Pending", views=0, downloads=0)
        material_id = self.gateway.insert(MATERIALS, doc)
        logger.info("Material %s submitted for subject %s", material_id, submission.subject_id)
        return Result.ok(material_id)

    @write_intent("approve material")
    def approve_material(self, material_id: str) -> Result:
        current = self.gateway.get(MATERIALS, material_id)
        if current is None:
            raise NotFoundError("Material not found")
        if current.get("status") == "Approved":
            return Result.ok(material_id)
        self.gateway.update(MATERIALS, material_id, {
            "status": "Approved",
            "approved_at": datetime.now(timezone.utc),
        })
        logger.info("Material %s approved", material_id)
        return Result.ok(material_id)

    @write_intent("reject material")
    def reject_material(self, material_id: str) -> Result:
        # rejection removes the submission entirely, same as delete
        self.gateway.delete(MATERIALS, material_id)
        logger.info("Material %s rejected", material_id)
        return Result.ok(material_id)

    @write_intent("delete material")
    def delete_material(self, material_id: str) -> Result:
        self.gateway.delete(MATERIALS, material_id)
        logger.info("Material %s deleted", material_id)
        return Result.ok(material_id)

    @write_intent("update material")
    def update_material(self, material_id: str, changes: Union[MaterialUpdate, Dict[str, Any]]) -> Result:
        fields = MaterialUpdate.model_validate(changes).model_dump(exclude_none=True)
        if not fields:
            raise InvalidInputError("Nothing to update")
        current = self.gateway.get(MATERIALS, material_id)
        if current is None:
            raise NotFoundError("Material not found")
        if "title" in fields or "subject_id" in fields:
            self._ensure_unique(
                fields.get("title", current.get("title")),
                fields.get("subject_id", current.get("subject_id")),
                exclude_id=material_id,
            )
        self.gateway.update(MATERIALS, material_id, fields)
        return Result.ok(material_id)

    @write_intent("increment view count")
    def increment_view(self, material_id: str) -> Result:
        self.gateway.increment(MATERIALS, material_id, "views")
        return Result.ok(material_id)

    @write_intent("increment download count")
    def increment_download(self, material_id: str) -> Result:
        self.gateway.increment(MATERIALS, material_id, "downloads")
        return Result.ok(material_id)

    @write_intent("reset analytics")
    def reset_analytics(self) -> Result:
        count = self.gateway.update_all(MATERIALS, {"views": 0, "downloads": 0})
        logger.info("Analytics reset on %d materials", count)
        return Result.ok()

    # ----------------------
    # Subjects
    # ----------------------

    @write_intent("add subject")
    def add_subject(self, data: Union[SubjectInput, Dict[str, Any]]) -> Result:
        subject = SubjectInput.model_validate(data)
        subject_id = self.gateway.insert(SUBJECTS, subject.model_dump())
        return Result.ok(subject_id)

    @write_intent("update subject")
    def update_subject(self, subject_id: str, name: Optional[str] = None, icon: Optional[str] = None) -> Result:
        fields = {}
        if name is not None:
            if not name.strip():
                raise InvalidInputError("name is required")
            fields["name"] = name.strip()
        if icon:
            fields["icon"] = icon
        if not fields:
            raise InvalidInputError("Nothing to update")
        self.gateway.update(SUBJECTS, subject_id, fields)
        return Result.ok(subject_id)

    @write_intent("delete subject")
    def delete_subject(self, subject_id: str) -> Result:
        if self.gateway.find(MATERIALS, {"subject_id": subject_id}, limit=1):
            raise InvalidInputError("Subject still has materials; delete or move them first")
        self.gateway.delete(SUBJECTS, subject_id)
        logger.info("Subject %s deleted", subject_id)
        return Result.ok(subject_id)

    # ----------------------
    # Users
    # ----------------------

    @write_intent("change user role")
    def set_user_role(self, uid: str, role: str) -> Result:
        if role not in ROLES:
            raise InvalidInputError(f"Unknown role: {role}")
        self.gateway.update(USERS, uid, {"role": role})
        logger.info("User %s is now %s", uid, role)
        return Result.ok(uid)

    @write_intent("change ban state")
    def set_user_banned(self, uid: str, banned: bool) -> Result:
        self.gateway.update(USERS, uid, {"is_banned": bool(banned)})
        logger.info("User %s %s", uid, "banned" if banned else "unbanned")
        return Result.ok(uid)

    # ----------------------
    # Reports
    # ----------------------

    @write_intent("submit report")
    def submit_report(self, data: Union[ReportInput, Dict[str, Any]], include_pending: bool = False) -> Result:
        """File a report on a material. Pending materials count as missing unless include_pending."""
        report = ReportInput.model_validate(data)
        material = self.get_material(report.material_id)
        if material is None or (material.status != "Approved" and not include_pending):
            raise NotFoundError("Material not found")
        subject = self.get_subject_by_id(material.subject_id)
        semester = self.get_semester_by_id(material.sem_id)
        report_id = self.gateway.insert(REPORTS, {
            "material_id": material.id,
            "material_title": material.title,
            "material_link": material.link,
            "subject": subject.name if subject else "Unknown",
            "semester": semester.name if semester else material.sem_id,
            "reason": report.reason_text(),
            "status": "unread",
        })
        return Result.ok(report_id)

    @write_intent("resolve report")
    def resolve_report(self, report_id: str) -> Result:
        self.gateway.update(REPORTS, report_id, {"status": "resolved"})
        return Result.ok(report_id)

    @write_intent("delete report")
    def delete_report(self, report_id: str) -> Result:
        self.gateway.delete(REPORTS, report_id)
        return Result.ok(report_id)
