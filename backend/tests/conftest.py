"""
Common test fixtures: an in-memory sandbox and a scripted generation client.
"""
import pytest

from sitegen.generation import GenerationError
from sitegen.session import BuildSession
from sitegen.synchronizer import SandboxSynchronizer


PREVIEW_URL = "https://3000-sbx.preview.test"


class FakeSandbox:
    """Records every call the synchronizer makes."""

    def __init__(self, exit_codes=None, url=PREVIEW_URL, mount_error=None, ready_error=None):
        self.exit_codes = exit_codes or {}
        self.url = url
        self.mount_error = mount_error
        self.ready_error = ready_error
        self.mounts = []
        self.runs = []
        self.starts = []
        self.log_requests = []
        self.closed = False

    async def mount(self, descriptor):
        if self.mount_error:
            raise self.mount_error
        self.mounts.append(descriptor)

    async def run(self, command, timeout=180):
        self.runs.append(command)
        return self.exit_codes.get(command, 0)

    async def start(self, command):
        self.starts.append(command)

    async def wait_for_server(self, port, timeout=60):
        if self.ready_error:
            raise self.ready_error
        return self.url

    async def logs(self, lines=100):
        self.log_requests.append(lines)
        return "Accepting connections at http://localhost:3000"

    async def close(self):
        self.closed = True

    @property
    def install_calls(self):
        return self.runs.count("npm install")


class ScriptedClient:
    """Stands in for GenerationClient: returns (or raises) queued responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def check(self):
        pass

    async def generate(self, messages, tier=None, max_attempts=None, backoff=None):
        self.calls.append({"messages": list(messages), "tier": tier})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def artifact(*actions, title="Test Site"):
    body = "\n".join(actions)
    return f'<artifact id="site" title="{title}">\n{body}\n</artifact>'


def file_action(path, content):
    return f'<action type="file" path="{path}">\n{content}\n</action>'


def shell_action(command):
    return f'<action type="shell">\n{command}\n</action>'


@pytest.fixture
def fake_sandbox():
    return FakeSandbox()


@pytest.fixture
def make_session(fake_sandbox):
    def _make(*responses, sandbox=fake_sandbox, soft_timeout=None):
        client = ScriptedClient(*responses)
        session = BuildSession(
            client,
            SandboxSynchronizer(sandbox=sandbox),
            soft_timeout=soft_timeout,
        )
        return session
    return _make


@pytest.fixture
def generation_failure():
    return GenerationError("All 2 generation attempts failed: boom")
