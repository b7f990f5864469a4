"""
Sandbox synchronizer: mounts the workspace tree into a sandbox and brings up
the preview server.

  UNINITIALIZED -> MOUNTING -> INSTALLING -> STARTING -> READY
  any non-terminal state -> FAILED

Every call re-mounts the tree (files are overwritten by path). Installation and
the dev server run once per sandbox lifetime; a failed sync can be retried as a
whole and resumes from the first stage that never succeeded. Calls against the
same synchronizer are serialized.

Sandbox failures never raise out of `sync`: they come back as a FAILED
SyncResult with a human-readable cause.
"""

import asyncio
import json

from sitegen.models import FileNode, Step, SyncResult, SyncState
from sitegen.workspace import to_mount_descriptor


INSTALL_COMMAND = "npm install"
START_COMMAND = "npm run dev"


class SyncError(Exception):
    pass


class SandboxMountError(SyncError):
    pass


class SandboxProcessError(SyncError):
    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


def build_manifest(port: int) -> str:
    """Minimal package.json that serves the project root as static files."""
    manifest = {
        "name": "web-preview",
        "type": "module",
        "scripts": {"dev": f"npx serve -l {port}"},
        "dependencies": {"serve": "^14.2.1"},
    }
    return json.dumps(manifest, indent=2)


def with_manifest(descriptor: dict, port: int) -> dict:
    """Add a root package.json unless the generated project already has one."""
    existing = descriptor.get("package.json")
    if existing and "file" in existing:
        return descriptor
    return {**descriptor, "package.json": {"file": {"contents": build_manifest(port)}}}


def _describe(e: Exception) -> str:
    return str(e) or e.__class__.__name__


class SandboxSynchronizer:
    def __init__(
        self,
        sandbox=None,
        port: int = 3000,
        install_timeout: int = 180,
        server_ready_timeout: float = 60,
    ):
        self.sandbox = sandbox
        self.port = port
        self.install_timeout = install_timeout
        self.server_ready_timeout = server_ready_timeout

        self.state = SyncState.UNINITIALIZED
        self.transitions: list[SyncState] = []
        self.preview_url: str | None = None
        self._installed = False
        self._started = False
        self._ran_command_ids: set[int] = set()
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, sandbox=None) -> "SandboxSynchronizer":
        return cls(
            sandbox=sandbox,
            port=settings.preview_port,
            install_timeout=settings.install_timeout,
            server_ready_timeout=settings.server_ready_timeout,
        )

    def _transition(self, state: SyncState):
        self.state = state
        self.transitions.append(state)
        print(f"[sync] {state.value}")

    async def sync(self, tree: list[FileNode], commands: list[Step] = ()) -> SyncResult:
        async with self._lock:
            return await self._sync(tree, list(commands))

    async def _sync(self, tree: list[FileNode], commands: list[Step]) -> SyncResult:
        if self.sandbox is None:
            self._transition(SyncState.FAILED)
            return SyncResult(state=SyncState.FAILED, error="Sandbox not available")

        installed_now = False
        try:
            self._transition(SyncState.MOUNTING)
            await self._mount(tree)

            if not self._installed:
                self._transition(SyncState.INSTALLING)
                exit_code = await self._run(INSTALL_COMMAND)
                if exit_code != 0:
                    raise SandboxProcessError(f"Installation failed with code {exit_code}", exit_code)
                self._installed = True
                installed_now = True

            for step in commands:
                if step.id in self._ran_command_ids:
                    continue
                exit_code = await self._run(step.content)
                if exit_code != 0:
                    raise SandboxProcessError(
                        f"Command `{step.content}` failed with code {exit_code}", exit_code
                    )
                self._ran_command_ids.add(step.id)

            if not self._started:
                self._transition(SyncState.STARTING)
                try:
                    await self.sandbox.start(START_COMMAND)
                except Exception as e:
                    raise SandboxProcessError(f"Could not start dev server: {_describe(e)}") from e
                self._started = True

            if not self.preview_url:
                try:
                    url = await self.sandbox.wait_for_server(self.port, self.server_ready_timeout)
                except Exception as e:
                    raise SandboxProcessError(f"Dev server never became ready: {_describe(e)}") from e
                if not url:
                    raise SandboxProcessError("Sandbox reported an empty preview URL")
                self.preview_url = url

        except SyncError as e:
            self._transition(SyncState.FAILED)
            print(f"  [sync] Failed: {e}")
            return SyncResult(
                state=SyncState.FAILED,
                error=_describe(e),
                exit_code=getattr(e, "exit_code", None),
                installed=installed_now,
            )

        self._transition(SyncState.READY)
        return SyncResult(state=SyncState.READY, preview_url=self.preview_url, installed=installed_now)

    async def _mount(self, tree: list[FileNode]):
        try:
            descriptor = with_manifest(to_mount_descriptor(tree), self.port)
            await self.sandbox.mount(descriptor)
        except Exception as e:
            raise SandboxMountError(f"Mount failed: {_describe(e)}") from e

    async def _run(self, command: str) -> int:
        try:
            return await self.sandbox.run(command, timeout=self.install_timeout)
        except Exception as e:
            raise SandboxProcessError(f"`{command}` could not run: {_describe(e)}") from e

    def has_run(self, step_id: int) -> bool:
        return step_id in self._ran_command_ids
