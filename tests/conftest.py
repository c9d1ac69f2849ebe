from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional

import pytest

import daytona_mcp_server as dm


class FakeApiError(Exception):
    """Mimics DaytonaError: a message plus an HTTP status code."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class ExecResult:
    exit_code: int
    result: str


@dataclass
class SessionCommandResult:
    cmd_id: str
    output: Optional[str]
    exit_code: Optional[int]


@dataclass
class FakeSession:
    session_id: str
    commands: list = field(default_factory=list)


@dataclass
class FakeFileInfo:
    name: str
    is_dir: bool
    size: int
    mod_time: str = "2026-01-01T00:00:00Z"


@dataclass
class FakeMatch:
    file: str
    line: int
    content: str


@dataclass
class FakeGitStatus:
    current_branch: str = "main"
    ahead: int = 0
    behind: int = 0
    branch_published: bool = True
    file_status: list = field(default_factory=list)


class _Recorder:
    def __init__(self, calls: list):
        self.calls = calls
        self._lock = threading.Lock()

    def _record(self, *entry):
        with self._lock:
            self.calls.append(entry)


class FakeProcess(_Recorder):
    def __init__(self, calls: list):
        super().__init__(calls)
        self.sessions: dict[str, FakeSession] = {}

    def exec(self, command, cwd=None, env=None, timeout=None):
        self._record("process.exec", command, cwd, timeout)
        if command.startswith("exit "):
            return ExecResult(exit_code=int(command.split()[1]), result="")
        return ExecResult(exit_code=0, result=f"ran: {command}")

    def code_run(self, code, params=None, timeout=None):
        self._record("process.code_run", code, params, timeout)
        return ExecResult(exit_code=0, result=f"code: {code}")

    def create_session(self, session_id):
        self._record("process.create_session", session_id)
        self.sessions[session_id] = FakeSession(session_id=session_id)

    def execute_session_command(self, session_id, req, timeout=None):
        self._record("process.execute_session_command", session_id, req, timeout)
        if session_id not in self.sessions:
            raise FakeApiError(f"Session {session_id} not found", status_code=404)
        self.sessions[session_id].commands.append({"command": req.command})
        return SessionCommandResult(cmd_id="cmd-1", output=f"out: {req.command}", exit_code=0)

    def delete_session(self, session_id):
        self._record("process.delete_session", session_id)
        if self.sessions.pop(session_id, None) is None:
            raise FakeApiError(f"Session {session_id} not found", status_code=404)

    def list_sessions(self):
        self._record("process.list_sessions")
        return list(self.sessions.values())


class FakeFs(_Recorder):
    def __init__(self, calls: list):
        super().__init__(calls)
        self.files: dict[str, bytes] = {"/home/daytona/README.md": b"hello"}

    def list_files(self, path):
        self._record("fs.list_files", path)
        prefix = path.rstrip("/") + "/"
        return [
            FakeFileInfo(name=p[len(prefix):], is_dir=False, size=len(data))
            for p, data in sorted(self.files.items())
            if p.startswith(prefix)
        ]

    def create_folder(self, path, mode):
        self._record("fs.create_folder", path, mode)

    def delete_file(self, path, recursive=False):
        self._record("fs.delete_file", path, recursive)
        nested = [p for p in self.files if p.startswith(path.rstrip("/") + "/")]
        if nested and not recursive:
            raise FakeApiError(f"Directory {path} is not empty", status_code=400)
        for p in nested:
            del self.files[p]
        if self.files.pop(path, None) is None and not nested:
            raise FakeApiError(f"File {path} not found", status_code=404)

    def move_files(self, source, destination):
        self._record("fs.move_files", source, destination)
        self.files[destination] = self.files.pop(source)

    def find_files(self, path, pattern):
        self._record("fs.find_files", path, pattern)
        return [
            FakeMatch(file=p, line=1, content=data.decode())
            for p, data in sorted(self.files.items())
            if p.startswith(path) and pattern.encode() in data
        ]

    def replace_in_files(self, files, pattern, new_value):
        self._record("fs.replace_in_files", files, pattern, new_value)
        return [{"file": f, "success": True} for f in files]

    def set_file_permissions(self, path, mode=None, owner=None, group=None):
        self._record("fs.set_file_permissions", path, mode, owner, group)

    def upload_file(self, data, remote_path):
        self._record("fs.upload_file", remote_path)
        self.files[remote_path] = data

    def download_file(self, remote_path):
        self._record("fs.download_file", remote_path)
        if remote_path not in self.files:
            raise FakeApiError(f"File {remote_path} not found", status_code=404)
        return self.files[remote_path]


class FakeGit(_Recorder):
    def clone(self, url, path, branch=None, commit_id=None, username=None, password=None):
        self._record("git.clone", url, path, branch, commit_id, username, password)

    def status(self, path):
        self._record("git.status", path)
        if path == "/missing":
            raise FakeApiError("repository not found", status_code=404)
        return FakeGitStatus()

    def branches(self, path):
        self._record("git.branches", path)
        return {"branches": ["main", "dev"]}

    def add(self, path, files):
        self._record("git.add", path, files)

    def commit(self, path, message, author, email):
        self._record("git.commit", path, message, author, email)

    def pull(self, path, username=None, password=None):
        self._record("git.pull", path, username, password)

    def push(self, path, username=None, password=None):
        self._record("git.push", path, username, password)
        if username == "denied":
            raise FakeApiError("authentication required", status_code=401)


class FakeSandbox:
    def __init__(self, sandbox_id: str, calls: list, state: str = "started"):
        self.id = sandbox_id
        self.state = state
        self.created_at = "2026-01-01T00:00:00Z"
        self.process = FakeProcess(calls)
        self.fs = FakeFs(calls)
        self.git = FakeGit(calls)


class FakeDaytona(_Recorder):
    """Synchronous stand-in for daytona_sdk.Daytona."""

    def __init__(self):
        super().__init__([])
        self.sandboxes: dict[str, FakeSandbox] = {}
        self._seq = 0

    def add(self, sandbox_id: str, state: str = "started") -> FakeSandbox:
        sb = FakeSandbox(sandbox_id, self.calls, state=state)
        self.sandboxes[sandbox_id] = sb
        return sb

    def create(self, params=None, timeout=60):
        self._record("create", params, timeout)
        self._seq += 1
        return self.add(f"sb-new-{self._seq}")

    def get(self, sandbox_id):
        self._record("get", sandbox_id)
        if sandbox_id == "explode":
            raise FakeApiError("internal server error", status_code=500)
        try:
            return self.sandboxes[sandbox_id]
        except KeyError:
            raise FakeApiError(
                f"Sandbox with ID {sandbox_id} not found", status_code=404
            ) from None

    def list(self):
        self._record("list")
        return list(self.sandboxes.values())

    def start(self, sandbox, timeout=60):
        self._record("start", sandbox.id, timeout)
        sandbox.state = "started"

    def stop(self, sandbox, timeout=60):
        self._record("stop", sandbox.id)
        sandbox.state = "stopped"

    def delete(self, sandbox, timeout=60):
        self._record("delete", sandbox.id, timeout)
        del self.sandboxes[sandbox.id]

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1000.0)


@pytest.fixture
def fake_client() -> FakeDaytona:
    client = FakeDaytona()
    client.add("sb1")
    client.add("sb2", state="stopped")
    return client


@pytest.fixture
def server(fake_client, clock) -> dm.DaytonaMcpServer:
    return dm.DaytonaMcpServer(dm.DaytonaBackend(fake_client), clock=clock)
