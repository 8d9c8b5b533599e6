import json
import logging
from contextlib import asynccontextmanager
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Query, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
import asyncio

import config
from access import AccessPolicy, RouteDecision, guard
from database import db, MongoGateway
from errors import HTTP_STATUS, PortalError
from links import to_download_link
from listing import ALL, QueryParams, query, search_users
from schemas import (
    Identity,
    Material,
    MaterialSubmission,
    MaterialUpdate,
    ReportInput,
    Result,
    Role,
    SubjectInput,
)
from session import Session, SessionRegistry
from store import StudyStore

logger = logging.getLogger(__name__)


def attach_store(app: FastAPI, store: StudyStore):
    """Start the store's subscriptions and make it and a session registry available to requests."""
    store.subscribe()
    app.state.store = store
    app.state.sessions = SessionRegistry(store, config.RECENT_HISTORY_LIMIT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    if app.state.store is None and db is not None:
        attach_store(app, StudyStore(MongoGateway(db), AccessPolicy(config.ADMIN_EMAILS)))
    yield
    if app.state.sessions is not None:
        app.state.sessions.close()
    if app.state.store is not None:
        app.state.store.close()


app = FastAPI(title="FYCS Study Hub API", lifespan=lifespan)
app.state.store = None
app.state.sessions = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Utilities
# ----------------------

def get_store(request: Request) -> StudyStore:
    store = request.app.state.store
    if store is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return store


def get_sessions(request: Request) -> SessionRegistry:
    sessions = request.app.state.sessions
    if sessions is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return sessions


def current_session(request: Request, x_session_token: Optional[str] = Header(None)) -> Optional[Session]:
    sessions = request.app.state.sessions
    if sessions is None:
        return None
    return sessions.get(x_session_token)


def restricted_view() -> Dict[str, Any]:
    return {
        "view": "restricted",
        "message": "Your access is temporarily paused. Please contact the admin to resolve this.",
        "contact": config.SUPPORT_EMAIL,
        "actions": ["sign_out"],
    }


def enforce(session: Optional[Session], store: StudyStore, required_role: Optional[str] = None) -> Session:
    decision = guard(session, required_role, loading=store.loading)
    if decision == RouteDecision.ALLOW:
        return session
    if decision == RouteDecision.LOADING:
        raise HTTPException(status_code=503, detail="Loading, try again shortly")
    if decision == RouteDecision.SIGN_IN:
        raise HTTPException(status_code=401, detail="Sign in required")
    if decision == RouteDecision.RESTRICTED:
        raise HTTPException(status_code=403, detail=restricted_view())
    raise HTTPException(status_code=403, detail="Admin access required")


def require_user(session: Optional[Session] = Depends(current_session),
                 store: StudyStore = Depends(get_store)) -> Session:
    return enforce(session, store)


def require_admin(session: Optional[Session] = Depends(current_session),
                  store: StudyStore = Depends(get_store)) -> Session:
    return enforce(session, store, "admin")


def unwrap(result: Result) -> Result:
    if not result.success:
        raise HTTPException(status_code=HTTP_STATUS.get(result.code, 400), detail=result.error)
    return result


def visible_material(store: StudyStore, session: Session, material_id: str) -> Material:
    material = store.get_material(material_id)
    if material is None or (material.status != "Approved" and not session.is_admin):
        raise HTTPException(status_code=404, detail="Material not found")
    return material


def describe(session: Session) -> Dict[str, Any]:
    identity = session.identity
    return {
        "user": {
            "uid": identity.uid,
            "display_name": identity.display_name,
            "email": identity.email,
            "photo_url": identity.photo_url,
            "role": session.role,
            "is_banned": session.is_banned,
        },
        "is_admin": session.is_admin,
        "state": session.state.value,
    }


# ----------------------
# Auth
# ----------------------

@app.post("/auth/login")
async def login(identity: Identity, sessions: SessionRegistry = Depends(get_sessions)):
    result = unwrap(sessions.login(identity))
    session = sessions.get(result.id)
    return {"token": result.id, **describe(session)}


@app.post("/auth/logout")
async def logout(x_session_token: Optional[str] = Header(None),
                 sessions: SessionRegistry = Depends(get_sessions)):
    unwrap(sessions.logout(x_session_token))
    return Result.ok()


@app.get("/auth/me")
def me(session: Optional[Session] = Depends(current_session)):
    # banned sessions may still read their own state
    if session is None or not session.signed_in:
        raise HTTPException(status_code=401, detail="Sign in required")
    return describe(session)


@app.get("/restricted")
def restricted():
    return restricted_view()


# ----------------------
# Semesters & subjects
# ----------------------

class SubjectUpdateRequest(BaseModel):
    name: Optional[str] = None
    icon: Optional[str] = None


@app.get("/semesters")
def list_semesters(store: StudyStore = Depends(get_store), session: Session = Depends(require_user)):
    return [
        {**s.model_dump(), "subjects": len(store.get_subjects_by_semester(s.id))}
        for s in store.semesters
    ]


@app.get("/semesters/{sem_id}/subjects")
def list_subjects(sem_id: str, store: StudyStore = Depends(get_store), session: Session = Depends(require_user)):
    if store.get_semester_by_id(sem_id) is None:
        raise HTTPException(status_code=404, detail="Semester not found")
    return store.get_subjects_by_semester(sem_id)


@app.get("/subjects/{subject_id}")
def get_subject(subject_id: str, store: StudyStore = Depends(get_store), session: Session = Depends(require_user)):
    subject = store.get_subject_by_id(subject_id)
    if subject is None:
        raise HTTPException(status_code=404, detail="Subject not found")
    return subject


@app.get("/subjects/{subject_id}/materials")
def subject_materials(subject_id: str, sort: str = Query("newest"), store: StudyStore = Depends(get_store),
                      session: Session = Depends(require_user)):
    if store.get_subject_by_id(subject_id) is None:
        raise HTTPException(status_code=404, detail="Subject not found")
    return query(store.get_materials_by_subject(subject_id), QueryParams(sort=sort))


@app.post("/subjects")
async def create_subject(payload: SubjectInput, store: StudyStore = Depends(get_store),
                         session: Session = Depends(require_admin)):
    result = unwrap(store.add_subject(payload))
    await broadcaster.broadcast({"event": "subject_created", "subject_id": result.id})
    return result


@app.patch("/subjects/{subject_id}")
async def edit_subject(subject_id: str, payload: SubjectUpdateRequest, store: StudyStore = Depends(get_store),
                       session: Session = Depends(require_admin)):
    result = unwrap(store.update_subject(subject_id, name=payload.name, icon=payload.icon))
    await broadcaster.broadcast({"event": "subject_updated", "subject_id": subject_id})
    return result


@app.delete("/subjects/{subject_id}")
async def remove_subject(subject_id: str, store: StudyStore = Depends(get_store),
                         session: Session = Depends(require_admin)):
    result = unwrap(store.delete_subject(subject_id))
    await broadcaster.broadcast({"event": "subject_deleted", "subject_id": subject_id})
    return result


# ----------------------
# Materials + moderation
# ----------------------

@app.get("/materials")
def list_materials(
    status: str = Query("Approved"),
    type: str = Query(ALL),
    subject_id: str = Query(ALL),
    sem_id: str = Query(ALL),
    search: str = Query(""),
    sort: str = Query("newest"),
    deep_search: bool = Query(False),
    store: StudyStore = Depends(get_store),
    session: Session = Depends(require_user),
):
    if not session.is_admin:
        status = "Approved"
    params = QueryParams(status=status, type=type, subject_id=subject_id, sem_id=sem_id, search=search, sort=sort)
    names = store.subject_names() if deep_search else None
    return query(store.materials, params, subject_names=names)


@app.get("/materials/recent")
def recent_materials(limit: int = Query(5, ge=0, le=50), store: StudyStore = Depends(get_store),
                     session: Session = Depends(require_user)):
    return store.get_recent_materials(limit)


@app.get("/materials/pending")
def pending_materials(store: StudyStore = Depends(get_store), session: Session = Depends(require_admin)):
    return query(store.get_pending_materials(), QueryParams(status="Pending", sort="oldest"))


@app.post("/materials/reset-analytics")
async def reset_analytics(store: StudyStore = Depends(get_store), session: Session = Depends(require_admin)):
    result = unwrap(store.reset_analytics())
    await broadcaster.broadcast({"event": "analytics_reset"})
    return result


@app.get("/materials/{material_id}")
def get_material(material_id: str, store: StudyStore = Depends(get_store), session: Session = Depends(require_user)):
    return visible_material(store, session, material_id)


@app.post("/materials")
async def create_material(payload: MaterialSubmission, store: StudyStore = Depends(get_store),
                          session: Session = Depends(require_user)):
    result = unwrap(store.add_material(payload))
    await broadcaster.broadcast({"event": "material_created", "material_id": result.id, "title": payload.title})
    return result


@app.post("/materials/{material_id}/approve")
async def approve_material(material_id: str, store: StudyStore = Depends(get_store),
                           session: Session = Depends(require_admin)):
    result = unwrap(store.approve_material(material_id))
    await broadcaster.broadcast({"event": "material_approved", "material_id": material_id})
    return result


@app.post("/materials/{material_id}/reject")
async def reject_material(material_id: str, store: StudyStore = Depends(get_store),
                          session: Session = Depends(require_admin)):
    result = unwrap(store.reject_material(material_id))
    await broadcaster.broadcast({"event": "material_rejected", "material_id": material_id})
    return result


@app.patch("/materials/{material_id}")
async def edit_material(material_id: str, payload: MaterialUpdate, store: StudyStore = Depends(get_store),
                        session: Session = Depends(require_admin)):
    result = unwrap(store.update_material(material_id, payload))
    await broadcaster.broadcast({"event": "material_updated", "material_id": material_id})
    return result


@app.delete("/materials/{material_id}")
async def delete_material(material_id: str, store: StudyStore = Depends(get_store),
                          session: Session = Depends(require_admin)):
    result = unwrap(store.delete_material(material_id))
    await broadcaster.broadcast({"event": "material_deleted", "material_id": material_id})
    return result


@app.post("/materials/{material_id}/view")
async def view_material(material_id: str, store: StudyStore = Depends(get_store),
                        session: Session = Depends(require_user)):
    material = visible_material(store, session, material_id)
    # opening the file must not depend on the counter write
    result = store.increment_view(material_id)
    session.record_view(material)
    return {"link": material.link, "counted": result.success}


@app.post("/materials/{material_id}/download")
async def download_material(material_id: str, store: StudyStore = Depends(get_store),
                            session: Session = Depends(require_user)):
    material = visible_material(store, session, material_id)
    result = store.increment_download(material_id)
    session.record_download(material)
    return {"link": to_download_link(material.link), "counted": result.success}


@app.get("/me/history")
def history(session: Session = Depends(require_user)):
    return {"viewed": session.recently_viewed, "downloaded": session.recently_downloaded}


@app.get("/stats")
def stats(store: StudyStore = Depends(get_store), session: Session = Depends(require_user)):
    return store.stats


# ----------------------
# Users
# ----------------------

class RoleRequest(BaseModel):
    role: Role


class BanRequest(BaseModel):
    banned: bool


@app.get("/users")
def list_users(search: str = Query(""), store: StudyStore = Depends(get_store),
               session: Session = Depends(require_admin)):
    return search_users(store.users, search)


@app.post("/users/{uid}/role")
async def change_role(uid: str, payload: RoleRequest, store: StudyStore = Depends(get_store),
                      session: Session = Depends(require_admin)):
    return unwrap(store.set_user_role(uid, payload.role))


@app.post("/users/{uid}/ban")
async def change_ban(uid: str, payload: BanRequest, store: StudyStore = Depends(get_store),
                     session: Session = Depends(require_admin)):
    return unwrap(store.set_user_banned(uid, payload.banned))


# ----------------------
# Reports
# ----------------------

@app.post("/reports")
async def create_report(payload: ReportInput, store: StudyStore = Depends(get_store),
                        session: Session = Depends(require_user)):
    result = unwrap(store.submit_report(payload, include_pending=session.is_admin))
    await broadcaster.broadcast({"event": "report_created", "report_id": result.id})
    return result


@app.get("/reports")
def list_reports(store: StudyStore = Depends(get_store), session: Session = Depends(require_admin)):
    reports = store.list_reports()
    return {"reports": reports, "unresolved": sum(1 for r in reports if r.status != "resolved")}


@app.post("/reports/{report_id}/resolve")
async def resolve_report(report_id: str, store: StudyStore = Depends(get_store),
                         session: Session = Depends(require_admin)):
    return unwrap(store.resolve_report(report_id))


@app.delete("/reports/{report_id}")
async def delete_report(report_id: str, store: StudyStore = Depends(get_store),
                        session: Session = Depends(require_admin)):
    return unwrap(store.delete_report(report_id))


# ----------------------
# Server-Sent Events broadcaster for realtime updates
# ----------------------
class Broadcaster:
    def __init__(self):
        self.subscribers: List[asyncio.Queue] = []

    async def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue()
        self.subscribers.append(q)
        # On subscribe, send a hello event
        await q.put({"event": "connected"})
        return q

    def unsubscribe(self, q: asyncio.Queue):
        try:
            self.subscribers.remove(q)
        except ValueError:
            pass

    async def broadcast(self, message: Dict[str, Any]):
        for q in list(self.subscribers):
            await q.put(message)


broadcaster = Broadcaster()


@app.get("/events")
async def events():
    async def event_generator():
        q = await broadcaster.subscribe()
        try:
            while True:
                msg = await q.get()
                yield f"data: {json.dumps(msg, default=str)}\n\n"
        finally:
            broadcaster.unsubscribe(q)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# ----------------------
# Meta & health
# ----------------------
@app.get("/")
def read_root():
    return {"message": "FYCS Study Hub API"}


@app.get("/schema")
def get_schema():
    """Expose the collections (names only) for tooling."""
    return {
        "collections": [
            {"name": "materials"},
            {"name": "subjects"},
            {"name": "users"},
            {"name": "reports"},
        ]
    }


@app.get("/test")
def test_database(request: Request):
    store: Optional[StudyStore] = request.app.state.store
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "loading": None,
        "collections": [],
    }
    if store is None:
        return response
    response["loading"] = store.loading
    try:
        response["collections"] = store.gateway.collection_names()[:10]
        response["connection_status"] = "Connected"
        response["database"] = "✅ Connected & Working"
    except PortalError as e:
        response["database"] = f"⚠️  Connected but Error: {e.message[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    config.configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
