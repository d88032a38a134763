from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from memory import MemoryPolicyError, MemoryService, SQLiteMemoryDB
from memory.models import EngineError, InvalidInput, NotFound, SessionContext
from triage_core import (
    ConversationEngine,
    ModelTriageClassifier,
    RuleBasedClassifier,
    TriageClassifier,
    TurnResult,
    UnhandledTriageLevel,
)

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()

logging.basicConfig(
    level=os.getenv("HEALTHBUDDY_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger("healthbuddy")


class StartEpisodeRequest(BaseModel):
    symptom_text: str
    for_whom: str = "self"
    age: float | None = None
    relationship: str | None = None


class MessageRequest(BaseModel):
    text: str


class EpisodePatch(BaseModel):
    title: str | None = None
    triage_level: str | None = None
    relationship: str | None = None
    is_active: bool | None = None


class FeedbackRequest(BaseModel):
    episode_id: str
    message_id: str
    rating: str
    reason: str | None = None
    custom_reason: str | None = None
    snippet: str | None = None


def _build_classifier() -> TriageClassifier:
    mode = os.getenv("HEALTHBUDDY_CLASSIFIER", "rules").strip().lower()
    if mode != "model":
        return RuleBasedClassifier()
    api_key = (os.getenv("HEALTHBUDDY_MODEL_API_KEY") or os.getenv("OPENAI_API_KEY") or "").strip()
    return ModelTriageClassifier(
        api_base=os.getenv("HEALTHBUDDY_MODEL_API_BASE", "https://api.openai.com/v1"),
        api_key=api_key,
        model=os.getenv("HEALTHBUDDY_MODEL_NAME", "gpt-4o-mini"),
        timeout_seconds=float(os.getenv("HEALTHBUDDY_MODEL_TIMEOUT_SECONDS", "20")),
    )


class HealthBuddyApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "HEALTHBUDDY_DB_PATH",
            str(Path(__file__).resolve().parent / "healthbuddy.sqlite"),
        )
        self.db = SQLiteMemoryDB(db_path)
        self.memory = MemoryService(self.db)
        self.engine = ConversationEngine(
            self.memory,
            classifier=_build_classifier(),
            max_follow_up_rounds=int(os.getenv("HEALTHBUDDY_MAX_FOLLOW_UP_ROUNDS", "2")),
        )
        self.max_sessions = max(1, int(os.getenv("HEALTHBUDDY_MAX_SESSIONS", "10000")))
        self._sessions: OrderedDict[tuple[str, str], SessionContext] = OrderedDict()
        self._sessions_lock = threading.Lock()

    def session(self, user_id: str, session_key: str) -> SessionContext:
        self.memory.guard.ensure_session_scope(session_key)
        key = (user_id, session_key)
        with self._sessions_lock:
            session = self._sessions.get(key)
            if session is None:
                session = SessionContext(user_id=user_id, session_key=session_key)
                self._sessions[key] = session
            self._sessions.move_to_end(key)
            # Least recently used sessions go first; only the active-episode pointer is lost.
            while len(self._sessions) > self.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.info("session evicted user=%s session=%s", *evicted)
            return session


container = HealthBuddyApp()
app = FastAPI(title="Health Buddy Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": "We couldn't find that conversation or item."})


@app.exception_handler(InvalidInput)
async def invalid_input_handler(request: Request, exc: InvalidInput):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(MemoryPolicyError)
async def memory_policy_handler(request: Request, exc: MemoryPolicyError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(UnhandledTriageLevel)
async def unhandled_level_handler(request: Request, exc: UnhandledTriageLevel):
    logger.error("unhandled triage level path=%s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Something went wrong. Please try again."})


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate or not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    raw = (auth_header or "").replace("Bearer", "", 1).strip()
    if not raw:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Bearer tokens are opaque here; identity comes from a trusted upstream.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def _session(authorization: str | None, x_user_id: str | None, x_session_key: str | None) -> SessionContext:
    user_id = resolve_user_id(authorization, x_user_id)
    default_session = f"session-{hashlib.sha1(user_id.encode('utf-8')).hexdigest()[:24]}"
    return container.session(user_id, (x_session_key or "").strip() or default_session)


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _triage_payload(result: TurnResult) -> dict[str, Any]:
    payload = result.as_dict()
    return {
        "kind": payload["kind"],
        "triage_level": payload["triage_level"],
        "questions": payload["questions"],
        "cta": payload["cta"],
        "emergency": payload["emergency"],
        "completeness": payload["completeness"],
        "episode": payload["episode"],
    }


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/episodes")
def start_episode(
    payload: StartEpisodeRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    result = container.engine.start_and_handle(
        session,
        symptom_text=payload.symptom_text,
        for_whom=payload.for_whom,
        age=payload.age,
        relationship=payload.relationship,
    )
    return result.as_dict()


@app.get("/episodes")
def list_episodes(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    return {"items": [episode.as_dict() for episode in container.memory.episodes.get_all_episodes(session)]}


@app.get("/episodes/recent")
def recent_episodes(
    limit: int = 10,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    episodes = container.memory.episodes.get_recent_episodes(session, limit)
    return {"items": [episode.as_dict() for episode in episodes]}


@app.get("/episodes/active")
def active_episode(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    episode = container.memory.episodes.get_active_episode(session)
    return {"episode": episode.as_dict() if episode else None}


@app.get("/episodes/{episode_id}")
def get_episode(
    episode_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    episode = container.memory.episodes.get_episode(session, episode_id)
    if episode is None:
        raise NotFound(f"Episode not found: {episode_id}")
    return episode.as_dict()


@app.patch("/episodes/{episode_id}")
def patch_episode(
    episode_id: str,
    payload: EpisodePatch,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise InvalidInput("Nothing to update.")
    return container.memory.episodes.update_episode(session, episode_id, **fields).as_dict()


@app.post("/episodes/{episode_id}/close")
def close_episode(
    episode_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    return container.memory.episodes.close_episode(session, episode_id).as_dict()


@app.post("/episodes/{episode_id}/resume")
def resume_episode(
    episode_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    episode = container.memory.episodes.resume_episode(session, episode_id)
    return {"episode": episode.as_dict() if episode else None}


@app.delete("/episodes/{episode_id}")
def delete_episode(
    episode_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    container.memory.episodes.delete_episode(session, episode_id)
    return {"ok": True}


@app.get("/episodes/{episode_id}/messages")
def list_messages(
    episode_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    if container.memory.episodes.get_episode(session, episode_id) is None:
        raise NotFound(f"Episode not found: {episode_id}")
    messages = container.memory.episodes.get_messages(session, episode_id)
    return {"items": [message.as_dict() for message in messages]}


@app.post("/episodes/{episode_id}/messages")
def post_message(
    episode_id: str,
    payload: MessageRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    return container.engine.handle_user_message(session, episode_id, payload.text).as_dict()


@app.post("/episodes/{episode_id}/messages/stream")
def post_message_stream(
    episode_id: str,
    payload: MessageRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)

    def event_stream():
        try:
            result = container.engine.handle_user_message(session, episode_id, payload.text)
        except NotFound:
            yield _emit_sse("error", {"message": "We couldn't find that conversation."})
            return
        except InvalidInput as exc:
            yield _emit_sse("error", {"message": str(exc)})
            return
        except EngineError as exc:
            logger.error("message stream engine error episode=%s: %s", episode_id, exc)
            yield _emit_sse("error", {"message": "Something went wrong. Please try again."})
            return
        except Exception:
            logger.exception("message stream failed episode=%s", episode_id)
            yield _emit_sse("error", {"message": "Something went wrong. Please try again."})
            return

        text = result.assistant_message.text
        for chunk in re.findall(r"\S+\s*", text):
            yield _emit_sse("token", {"delta": chunk})
        yield _emit_sse("message", result.assistant_message.as_dict())
        yield _emit_sse("triage", _triage_payload(result))

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.post("/feedback")
def submit_feedback(
    payload: FeedbackRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    entry = container.memory.submit_feedback(
        session,
        episode_id=payload.episode_id,
        message_id=payload.message_id,
        rating=payload.rating,
        reason=payload.reason,
        custom_reason=payload.custom_reason,
        snippet=payload.snippet,
    )
    return entry.as_dict()


@app.get("/feedback/summary")
def feedback_summary(
    recent_limit: int = 10,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return container.memory.feedback.get_feedback_summary(user_id, recent_limit).as_dict()


@app.get("/feedback/export")
def feedback_export(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return Response(content=container.memory.feedback.export_feedback_json(user_id), media_type="application/json")


@app.get("/feedback/episodes/{episode_id}")
def feedback_for_episode(
    episode_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    entries = container.memory.feedback.get_feedback_for_episode(user_id, episode_id)
    return {"items": [entry.as_dict() for entry in entries]}


@app.get("/feedback/messages/{message_id}/rated")
def feedback_rated(
    message_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    rated = container.memory.feedback.has_rated_message(user_id, message_id)
    return {"message_id": message_id, "rated": rated}


@app.post("/episodes/{episode_id}/memory/candidates")
def propose_memory_candidates(
    episode_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    session = _session(authorization, x_user_id, x_session_key)
    return {"items": container.engine.propose_memory(session, episode_id)}


@app.get("/memory/candidates")
def list_memory_candidates(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return {"items": container.memory.list_pending_candidates(user_id)}


@app.post("/memory/candidates/{candidate_id}/approve")
def approve_memory_candidate(
    candidate_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    item = container.memory.approve_candidate(
        user_id=user_id,
        candidate_id=candidate_id,
        session_key=x_session_key,
    )
    return item.as_dict()


@app.post("/memory/candidates/{candidate_id}/dismiss")
def dismiss_memory_candidate(
    candidate_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    dismissed = container.memory.dismiss_candidate(user_id=user_id, candidate_id=candidate_id)
    return {"ok": True, "dismissed": dismissed}


@app.get("/memory")
def list_memory(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return {
        "items": [item.as_dict() for item in container.memory.list_memory_items(user_id)],
        "snapshot": container.memory.memory_snapshot(user_id),
    }


@app.delete("/memory/{item_id}")
def delete_memory(
    item_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    container.memory.delete_memory_item(user_id=user_id, item_id=item_id)
    return {"ok": True}
