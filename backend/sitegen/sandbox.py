"""
Daytona sandbox handle: the runtime the synchronizer drives.

Uses the `daytona` package with the process.exec() / fs.upload_file() API.
Every blocking SDK call runs in a worker thread via asyncio.to_thread.

Handle interface expected by the synchronizer:
  mount(descriptor)              write a mount descriptor under the project root
  run(command, timeout) -> int   run to completion, return exit code
  start(command)                 launch a long-running process, do not wait
  wait_for_server(port, timeout) -> preview URL once something listens on port
  logs(lines) -> str             tail of the dev-server log
  close()                        delete the sandbox
"""

import asyncio
import shlex
import time

from daytona import Daytona, DaytonaConfig, CreateSandboxFromSnapshotParams

from sitegen.workspace import flatten_mount_descriptor


AUTO_ARCHIVE_MINUTES = 7 * 24 * 60


def get_daytona_client(api_key: str) -> Daytona:
    if not api_key:
        raise RuntimeError("DAYTONA_API_KEY not set")
    return Daytona(DaytonaConfig(api_key=api_key))


def _get_iframe_preview_url(sandbox, port: int) -> str:
    """Signed preview URL (embeds in iframes); falls back to the plain preview link."""
    try:
        signed = sandbox.create_signed_preview_url(port, expires_in_seconds=7200)
        return signed.url if hasattr(signed, "url") else str(signed)
    except Exception:
        preview = sandbox.get_preview_link(port)
        return preview.url


class DaytonaSandbox:
    def __init__(self, sandbox, project_root: str, daytona: Daytona | None = None):
        self.sandbox = sandbox
        self.project_root = project_root.rstrip("/")
        # kept outside the served project root
        self.log_file = f"{self.project_root}-server.log"
        self._daytona = daytona

    @property
    def id(self) -> str:
        return self.sandbox.id

    @classmethod
    async def create(cls, settings, progress=None) -> "DaytonaSandbox":
        """Provision a public sandbox and wait until it answers commands."""

        def _notify(msg: str):
            print(f"  [sandbox] {msg}")
            if progress:
                progress(msg)

        def _create():
            daytona = get_daytona_client(settings.daytona_api_key)

            _notify("Provisioning cloud sandbox...")
            params = CreateSandboxFromSnapshotParams(
                language="javascript",
                public=True,
                auto_stop_interval=settings.sandbox_auto_stop_minutes,
                auto_archive_interval=AUTO_ARCHIVE_MINUTES,
            )
            sandbox = daytona.create(params, timeout=120)

            # The container can still be booting when create() returns
            for attempt in range(30):
                try:
                    probe = sandbox.process.exec("echo ready", timeout=10)
                    if probe.result and "ready" in probe.result:
                        _notify(f"Sandbox responsive after {(attempt + 1) * 2}s")
                        break
                except Exception as probe_err:
                    if attempt % 5 == 4:
                        _notify(f"Still waiting for sandbox... ({(attempt + 1) * 2}s, last error: {probe_err})")
                time.sleep(2)
            else:
                _notify("WARNING: Sandbox not responsive after 60s, proceeding anyway")

            sandbox.process.exec(f"mkdir -p {shlex.quote(settings.sandbox_project_root)}", timeout=10)
            return cls(sandbox, settings.sandbox_project_root, daytona=daytona)

        return await asyncio.to_thread(_create)

    async def mount(self, descriptor: dict):
        files = flatten_mount_descriptor(descriptor)

        def _upload():
            dirs = sorted({
                f"{self.project_root}/{fp}".rsplit("/", 1)[0]
                for fp in files
            })
            if dirs:
                self.sandbox.process.exec(
                    "mkdir -p " + " ".join(shlex.quote(d) for d in dirs),
                    timeout=10,
                )
            for fp, content in files.items():
                self.sandbox.fs.upload_file(content.encode("utf-8"), f"{self.project_root}/{fp}")

        await asyncio.to_thread(_upload)
        print(f"  [sandbox] Mounted {len(files)} file(s) under {self.project_root}")

    async def run(self, command: str, timeout: int = 180) -> int:
        def _run():
            return self.sandbox.process.exec(
                f"cd {shlex.quote(self.project_root)} && {command} 2>&1",
                timeout=timeout,
            )

        result = await asyncio.to_thread(_run)
        exit_code = result.exit_code
        if exit_code != 0:
            tail = (result.result or "")[-500:]
            print(f"  [sandbox] `{command}` exited with {exit_code}: {tail}")
        return exit_code

    async def start(self, command: str):
        def _start():
            self.sandbox.process.exec(
                f"cd {shlex.quote(self.project_root)} && nohup {command} > {self.log_file} 2>&1 &",
                timeout=10,
            )

        await asyncio.to_thread(_start)

    async def wait_for_server(self, port: int, timeout: float = 60) -> str:
        """Poll until the port answers HTTP, then return the external preview URL."""

        def _wait():
            deadline = time.monotonic() + timeout
            while time.monotonic() < deadline:
                try:
                    probe = self.sandbox.process.exec(
                        f"curl -s -o /dev/null -w '%{{http_code}}' http://localhost:{port}/ 2>/dev/null",
                        timeout=10,
                    )
                    code = (probe.result or "").strip()
                    if code.isdigit() and int(code) > 0:
                        return _get_iframe_preview_url(self.sandbox, port)
                except Exception as e:
                    print(f"  [sandbox] Server probe failed: {e}")
                time.sleep(2)
            raise TimeoutError(f"No server listening on port {port} after {timeout:.0f}s")

        return await asyncio.to_thread(_wait)

    async def logs(self, lines: int = 100) -> str:
        def _tail():
            result = self.sandbox.process.exec(
                f"tail -{max(1, int(lines))} {self.log_file} 2>/dev/null || echo 'No logs yet'",
                timeout=15,
            )
            return result.result or ""

        return await asyncio.to_thread(_tail)

    async def close(self):
        def _delete():
            if self._daytona is not None:
                self._daytona.delete(self.sandbox)
                print(f"  [sandbox] Sandbox {self.id} deleted")

        await asyncio.to_thread(_delete)
