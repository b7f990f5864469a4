"""
Build session: one generation+apply+sync cycle at a time per session.

Turn pipeline:
  [A] classify prompt -> tier
  [B] generate (soft timeout; sandbox provisioning runs alongside on turn 1)
  [C] parse artifact -> steps
  [D] apply steps -> new workspace tree
  [E] sync tree into the sandbox -> preview URL or failure

The workspace tree is never rolled back when [E] fails.
"""

import asyncio
import time
import uuid

from pydantic import BaseModel, Field

from sitegen.artifact_parser import parse, parse_artifact_title
from sitegen.complexity import classify
from sitegen.config import get_settings
from sitegen.generation import GenerationClient, GenerationConfig
from sitegen.models import FileNode, Message, Role, Step, StepKind, StepStatus, SyncResult
from sitegen.prompts import (
    FOLLOWUP_NOTE,
    GENERATE_SYSTEM_PROMPT,
    ProjectType,
    detect_project_type,
    system_prompt_for,
)
from sitegen.sandbox import DaytonaSandbox
from sitegen.synchronizer import SandboxSynchronizer
from sitegen.workspace import apply, flatten_files, mark_completed


# In-memory session storage (session_id -> BuildSession)
_sessions: dict = {}


class SessionBusyError(Exception):
    """A turn is already in flight for this session."""


class TurnTimeoutError(Exception):
    """The caller stopped waiting for generation. The request itself may still finish."""


class TurnResult(BaseModel):
    session_id: str
    tier: str
    project_type: ProjectType = ProjectType.STATIC
    changed: bool
    title: str | None = None
    steps: list[Step] = Field(default_factory=list)
    rejected: dict[int, str] = Field(default_factory=dict)
    files: dict[str, str] = Field(default_factory=dict)
    sync: SyncResult | None = None


def _discard_result(task: asyncio.Task):
    # Abandoned generations finish on their own; retrieve the outcome so it is not reported as lost
    if not task.cancelled() and task.exception() is not None:
        print(f"  [session] Abandoned generation finished with error: {task.exception()}")


class BuildSession:
    def __init__(
        self,
        client: GenerationClient,
        synchronizer: SandboxSynchronizer,
        parser=parse,
        soft_timeout: float | None = None,
        sandbox_factory=None,
        session_id: str | None = None,
    ):
        self.id = session_id or uuid.uuid4().hex
        self.client = client
        self.synchronizer = synchronizer
        self.parser = parser
        self.soft_timeout = soft_timeout
        self.created_at = time.time()
        self.last_active = self.created_at

        self.messages: list[Message] = [Message(role=Role.SYSTEM, content=GENERATE_SYSTEM_PROMPT)]
        self.tree: list[FileNode] = []
        self.steps: list[Step] = []
        self.title: str | None = None
        self.project_type = ProjectType.STATIC

        self._lock = asyncio.Lock()
        self._sandbox_factory = sandbox_factory
        self._sandbox_task: asyncio.Task | None = None

    @property
    def loading(self) -> bool:
        return self._lock.locked()

    @property
    def files(self) -> dict[str, str]:
        return flatten_files(self.tree)

    def _notify(self, progress, event: str, **data):
        if progress:
            progress(event, data)

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def run_turn(self, prompt: str, progress=None) -> TurnResult:
        """
        Run one full cycle for `prompt`. Raises SessionBusyError if a turn is
        already running, GenerationError / TurnTimeoutError if no text came back.
        """
        if self._lock.locked():
            raise SessionBusyError(f"Session {self.id} is already generating")
        async with self._lock:
            try:
                return await self._turn(prompt, progress)
            finally:
                self.last_active = time.time()

    async def _turn(self, prompt: str, progress) -> TurnResult:
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValueError("prompt is required")

        # configuration errors abort before any sandbox exists
        self.client.check()
        self._start_sandbox_provisioning()

        # [A] tier
        tier = classify(prompt)
        print(f"[session {self.id[:8]}] Turn started, tier {tier.name} ({tier.max_tokens} tokens)")
        self._notify(progress, "tier", tier=tier.name, max_tokens=tier.max_tokens)

        is_followup = any(m.role == Role.ASSISTANT for m in self.messages)
        if not is_followup:
            self._select_template(prompt)
            self._notify(progress, "template", project_type=self.project_type.value)

        # [B] generate
        content = f"{prompt}\n\n{FOLLOWUP_NOTE}" if is_followup else prompt
        self.messages.append(Message(role=Role.USER, content=content))
        try:
            raw = await self._generate(tier)
        except BaseException:
            # keep history chronological: drop the unanswered user message
            self.messages.pop()
            raise
        self.messages.append(Message(role=Role.ASSISTANT, content=raw))
        self._notify(progress, "generated", chars=len(raw))

        # [C] parse
        next_id = max((s.id for s in self.steps), default=0) + 1
        steps = self.parser(raw, start_id=next_id)
        self.title = parse_artifact_title(raw) or self.title
        if not steps:
            print(f"[session {self.id[:8]}] No changes produced")
            self._notify(progress, "no_changes")
            return TurnResult(session_id=self.id, tier=tier.name, project_type=self.project_type,
                              changed=False, title=self.title, files=self.files)
        self._notify(progress, "steps", count=len(steps))

        # [D] apply the whole batch before anything is synced
        result = apply(self.tree, steps)
        steps = mark_completed(steps, result.completed_ids)
        self.tree = result.tree
        self.steps.extend(steps)
        self._notify(progress, "files", files=self.files)

        # [E] sync
        await self._attach_sandbox()
        sync_result = await self.synchronizer.sync(self.tree, self.commands())
        self._notify(progress, "sync", **sync_result.model_dump(mode="json"))

        return TurnResult(
            session_id=self.id,
            tier=tier.name,
            project_type=self.project_type,
            changed=bool(result.completed_ids),
            title=self.title,
            steps=steps,
            rejected=result.rejected,
            files=self.files,
            sync=sync_result,
        )

    async def _generate(self, tier) -> str:
        task = asyncio.ensure_future(self.client.generate(list(self.messages), tier=tier))
        if not self.soft_timeout:
            return await task
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.soft_timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(_discard_result)
            raise TurnTimeoutError(f"Generation did not finish within {self.soft_timeout:.0f}s")

    def _select_template(self, prompt: str):
        """First turn only: pick the project template and rebuild the system message."""
        self.project_type = detect_project_type(prompt)
        self.messages[0] = Message(
            role=Role.SYSTEM,
            content=system_prompt_for(self.project_type, port=self.synchronizer.port),
        )
        print(f"[session {self.id[:8]}] Template: {self.project_type.value}")

    def commands(self) -> list[Step]:
        """Completed RunCommand steps in apply order."""
        return [
            s for s in self.steps
            if s.kind == StepKind.RUN_COMMAND and s.status == StepStatus.COMPLETED
        ]

    # ------------------------------------------------------------------
    # Sandbox
    # ------------------------------------------------------------------

    def _start_sandbox_provisioning(self):
        if self._sandbox_factory and self._sandbox_task is None and self.synchronizer.sandbox is None:
            self._sandbox_task = asyncio.ensure_future(self._sandbox_factory())

    async def _attach_sandbox(self):
        if self._sandbox_task is None or self.synchronizer.sandbox is not None:
            return
        try:
            self.synchronizer.sandbox = await self._sandbox_task
        except Exception as e:
            print(f"[session {self.id[:8]}] Sandbox provisioning failed: {e}")
            # allow a fresh attempt on the next sync
            self._sandbox_task = None

    async def resync(self) -> SyncResult:
        """Retry the whole sync with the current tree (no generation)."""
        if self._lock.locked():
            raise SessionBusyError(f"Session {self.id} is busy")
        async with self._lock:
            self.last_active = time.time()
            self._start_sandbox_provisioning()
            await self._attach_sandbox()
            return await self.synchronizer.sync(self.tree, self.commands())

    async def logs(self, lines: int = 100) -> str:
        if self.synchronizer.sandbox is None:
            return ""
        return await self.synchronizer.sandbox.logs(lines)

    async def close(self):
        """Delete the sandbox, waiting for it first if it is still being provisioned."""
        await self._attach_sandbox()
        sandbox = self.synchronizer.sandbox
        if sandbox is not None:
            try:
                await sandbox.close()
            except Exception as e:
                print(f"[session {self.id[:8]}] Sandbox delete failed: {e}")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def create_session(settings=None) -> BuildSession:
    """Build a session wired from settings. The sandbox is provisioned on the first turn."""
    settings = settings or get_settings()
    client = GenerationClient(GenerationConfig.from_settings(settings))
    synchronizer = SandboxSynchronizer.from_settings(settings)

    sandbox_factory = None
    if settings.daytona_api_key:
        async def sandbox_factory():
            return await DaytonaSandbox.create(settings)
    else:
        print("[session] DAYTONA_API_KEY not set, previews disabled")

    session = BuildSession(
        client,
        synchronizer,
        soft_timeout=settings.generation_soft_timeout,
        sandbox_factory=sandbox_factory,
    )
    _sessions[session.id] = session
    return session


def get_session(session_id: str) -> BuildSession | None:
    return _sessions.get(session_id)


async def close_session(session_id: str) -> bool:
    session = _sessions.pop(session_id, None)
    if session is None:
        return False
    await session.close()
    return True


async def expire_idle_sessions(max_idle_seconds: float, now: float | None = None) -> list[str]:
    """Close every session that has been idle longer than `max_idle_seconds`. Busy sessions are kept."""
    now = now if now is not None else time.time()
    expired = [
        sid for sid, session in list(_sessions.items())
        if not session.loading and now - session.last_active > max_idle_seconds
    ]
    for sid in expired:
        print(f"[session-monitor] {sid[:8]} idle, closing")
        try:
            await close_session(sid)
        except Exception as e:
            print(f"[session-monitor] Failed to close {sid[:8]}: {e}")
    return expired


async def session_monitor_loop(interval: float, max_idle_seconds: float):
    """Periodically expire idle sessions. Runs until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await expire_idle_sessions(max_idle_seconds)
        except Exception as e:
            print(f"[session-monitor] Loop error: {e}")
