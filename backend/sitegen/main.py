from contextlib import asynccontextmanager
from functools import lru_cache
import asyncio

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from sitegen.auth import UserStore
from sitegen.config import get_settings
from sitegen.generation import ConfigurationError, GenerationError
from sitegen.session import (
    SessionBusyError,
    TurnTimeoutError,
    _sessions,
    close_session,
    create_session,
    get_session,
    session_monitor_loop,
)
from sitegen.sse_utils import sse_event


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    monitor = asyncio.create_task(
        session_monitor_loop(settings.session_sweep_interval, settings.session_idle_minutes * 60)
    )
    yield
    monitor.cancel()
    # Shutdown: delete every live sandbox
    for session_id in list(_sessions.keys()):
        try:
            await close_session(session_id)
        except Exception as e:
            print(f"[shutdown] Failed to close session {session_id[:8]}: {e}")


app = FastAPI(title="Site Builder API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
}

GENERATION_HELP = (
    "Try again, simplify the prompt, or switch the generation backend "
    "(GENERATION_BACKEND=openai|ollama|anthropic)."
)


@lru_cache()
def get_user_store() -> UserStore:
    return UserStore(get_settings().users_file)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Credentials(BaseModel):
    username: str = ""
    password: str = ""


class AuthResponse(BaseModel):
    success: bool
    message: str


class PromptRequest(BaseModel):
    prompt: str


class ChatRequest(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_session(session_id: str):
    session = get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _generation_http_error(e: Exception) -> HTTPException:
    if isinstance(e, SessionBusyError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, TurnTimeoutError):
        return HTTPException(status_code=504, detail=f"{e}. {GENERATION_HELP}")
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=500, detail=f"Generation service misconfigured: {e}")
    return HTTPException(status_code=502, detail=f"Generation failed: {e}. {GENERATION_HELP}")


async def _stream_turn(session, prompt: str, close_on_error: bool = False):
    """Run one turn and yield its progress as SSE frames. A failed first turn closes its session."""
    events: asyncio.Queue = asyncio.Queue()

    def progress(event: str, data: dict):
        events.put_nowait((event, data))

    task = asyncio.create_task(session.run_turn(prompt, progress=progress))
    yield sse_event("session", {"session_id": session.id})

    while not task.done() or not events.empty():
        try:
            event, data = await asyncio.wait_for(events.get(), timeout=0.5)
        except asyncio.TimeoutError:
            continue
        yield sse_event(event, data)

    try:
        result = task.result()
    except (GenerationError, TurnTimeoutError, SessionBusyError, ValueError) as e:
        if close_on_error:
            await close_session(session.id)
        yield sse_event("error", {"message": str(e), "help": GENERATION_HELP})
        return
    yield sse_event("done", result.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Backend is running"}


@app.get("/health")
async def health():
    return {"status": "ok", "sessions": len(_sessions)}


@app.post("/auth/register", response_model=AuthResponse)
async def register(request: Credentials):
    if not request.username or not request.password:
        raise HTTPException(status_code=400, detail="Username and password are required")
    store = get_user_store()
    if store.exists(request.username):
        raise HTTPException(status_code=400, detail="Username already exists")
    if not store.register(request.username, request.password):
        raise HTTPException(status_code=400, detail="Username or password contains invalid characters")
    return AuthResponse(success=True, message="User registered successfully")


@app.post("/auth/login", response_model=AuthResponse)
async def login(request: Credentials):
    if not request.username or not request.password:
        raise HTTPException(status_code=400, detail="Username and password are required")
    if not get_user_store().verify(request.username, request.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return AuthResponse(success=True, message="Login successful")


@app.post("/session")
async def create_session_endpoint(request: PromptRequest):
    """Start a session and run the first generation turn."""
    if not request.prompt.strip():
        raise HTTPException(status_code=400, detail="prompt is required")

    session = create_session()
    try:
        result = await session.run_turn(request.prompt)
    except (GenerationError, TurnTimeoutError, SessionBusyError) as e:
        await close_session(session.id)
        raise _generation_http_error(e)
    return result.model_dump(mode="json")


@app.post("/session/stream")
async def create_session_stream(request: PromptRequest):
    """Start a session with real-time progress via SSE."""
    if not request.prompt.strip():
        raise HTTPException(status_code=400, detail="prompt is required")

    session = create_session()
    return StreamingResponse(
        _stream_turn(session, request.prompt, close_on_error=True),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post("/session/{session_id}/chat")
async def session_chat(session_id: str, request: ChatRequest):
    """Follow-up instruction against an existing session (SSE)."""
    session = _require_session(session_id)
    if not request.message.strip():
        raise HTTPException(status_code=400, detail="message is required")
    if session.loading:
        raise HTTPException(status_code=409, detail="Session is already generating")

    return StreamingResponse(
        _stream_turn(session, request.message.strip()),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/session/{session_id}/files")
async def get_session_files(session_id: str):
    session = _require_session(session_id)
    return {
        "files": session.files,
        "tree": [node.model_dump(mode="json") for node in session.tree],
    }


@app.get("/session/{session_id}/steps")
async def get_session_steps(session_id: str):
    session = _require_session(session_id)
    return {"steps": [s.model_dump(mode="json") for s in session.steps]}


@app.post("/session/{session_id}/sync")
async def resync_session(session_id: str):
    """Retry the whole sandbox sync for the current files."""
    session = _require_session(session_id)
    try:
        result = await session.resync()
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return result.model_dump(mode="json")


@app.get("/session/{session_id}/logs")
async def get_session_logs(session_id: str, lines: int = 100):
    session = _require_session(session_id)
    try:
        logs = await session.logs(lines=max(1, min(lines, 1000)))
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"Could not read sandbox logs: {e}")
    return {"session_id": session_id, "logs": logs}


@app.delete("/session/{session_id}")
async def delete_session(session_id: str):
    if not await close_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"status": "deleted"}
