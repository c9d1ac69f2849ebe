#!/usr/bin/env python3
"""MCP server exposing Daytona sandboxes as tools and resources."""

import asyncio
import collections
import dataclasses
import datetime
import enum
import functools
import inspect
import json
import logging
import math
import os
import re
import sys
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from daytona_sdk import (
    CodeRunParams,
    CreateSandboxFromImageParams,
    CreateSandboxFromSnapshotParams,
    Daytona,
    DaytonaConfig,
    Resources,
    SessionExecuteRequest,
)
from mcp.server import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.stdio import stdio_server
from mcp.types import Resource, ResourceTemplate, TextContent, Tool
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

# ── Logging (stderr only; stdout carries the MCP protocol) ──────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("daytona-mcp")

# ── Config ───────────────────────────────────────────────────────────────

SERVER_NAME = "DaytonaMcpServer"
SERVER_VERSION = "0.1.0"

DEFAULT_SERVER_URL = "https://app.daytona.io/api"
DEFAULT_TARGET = "us"

# How long a resolved sandbox handle is trusted before re-fetching (seconds)
DEFAULT_CACHE_TTL = 30.0
DEFAULT_CACHE_SIZE = 1024

MAX_OUTPUT = 50_000

RESOURCE_MIME_TYPE = "application/json"


@dataclass
class ServerOptions:
    api_key: str
    server_url: str = DEFAULT_SERVER_URL
    target: str = DEFAULT_TARGET
    cache_ttl: float = DEFAULT_CACHE_TTL
    cache_size: int = DEFAULT_CACHE_SIZE
    verbose: bool = False

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "ServerOptions":
        """Build options from DAYTONA_* environment variables.

        Raises ValueError when DAYTONA_API_KEY is missing. Malformed numeric
        settings fall back to their defaults.
        """
        env = os.environ if environ is None else environ
        api_key = env.get("DAYTONA_API_KEY", "").strip()
        if not api_key:
            raise ValueError(
                "Daytona API key is required. Set the DAYTONA_API_KEY environment variable."
            )
        return cls(
            api_key=api_key,
            server_url=env.get("DAYTONA_SERVER_URL") or DEFAULT_SERVER_URL,
            target=env.get("DAYTONA_TARGET") or DEFAULT_TARGET,
            cache_ttl=_read_float_env(env, "DAYTONA_MCP_CACHE_TTL", DEFAULT_CACHE_TTL),
            cache_size=int(
                _read_float_env(env, "DAYTONA_MCP_CACHE_SIZE", DEFAULT_CACHE_SIZE, minimum=1)
            ),
            verbose=env.get("DAYTONA_MCP_VERBOSE", "").strip().lower() == "true",
        )


def _read_float_env(
    env, name: str, default: float, minimum: float = 0.0
) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default
    if not math.isfinite(value):
        log.warning(f"Ignoring non-finite {name}={raw!r}, using {default}")
        return default
    if value < minimum:
        log.warning(f"Ignoring out-of-range {name}={raw!r}, using {default}")
        return default
    return value


# ── Errors ───────────────────────────────────────────────────────────────


class OperationError(Exception):
    """Base for failures surfaced to MCP callers.

    ``str()`` is the JSON ``{"kind", "message"}`` object, which is what the
    MCP layer puts in the tool's error text.
    """

    kind = "OperationError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}

    def with_context(self, prefix: str) -> "OperationError":
        return type(self)(f"{prefix}: {self.message}")

    def __str__(self) -> str:
        return json.dumps(self.to_dict())


class InvalidInput(OperationError):
    kind = "InvalidInput"


class NotFound(OperationError):
    kind = "NotFound"


class BackendError(OperationError):
    kind = "BackendError"


class UnknownOperation(OperationError):
    kind = "UnknownOperation"


class DuplicateOperation(ValueError):
    pass


def _classify_backend_error(e: Exception) -> OperationError:
    """Map a Daytona SDK exception onto NotFound or BackendError."""
    message = str(e) or type(e).__name__
    status = getattr(e, "status_code", None) or getattr(e, "status", None)
    if status == 404 or "not found" in message.lower():
        return NotFound(message)
    return BackendError(message)


# ── Helpers ──────────────────────────────────────────────────────────────


def _humanize_bytes(n: int) -> str:
    v = float(n)
    for unit in ("B", "KB", "MB"):
        if v < 1024:
            return f"{v:.0f}{unit}" if unit == "B" else f"{v:.1f}{unit}"
        v /= 1024
    return f"{v:.1f}GB"


def _truncate(text: str, limit: int = MAX_OUTPUT) -> str:
    if len(text) <= limit:
        return text
    total = _humanize_bytes(len(text.encode()))
    return (
        text[:limit]
        + f"\n[truncated: {total} total, showing first {_humanize_bytes(limit)}]"
    )


def _jsonable(obj: Any) -> Any:
    """Convert SDK response objects (pydantic models, enums, dataclasses) to JSON data."""
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, (datetime.datetime, datetime.date)):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_jsonable(v) for v in obj]
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json", by_alias=True)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return _jsonable(dataclasses.asdict(obj))
    return obj


def _sandbox_summary(sandbox: Any) -> dict:
    state = getattr(sandbox, "state", None) or getattr(sandbox, "status", None)
    if isinstance(state, enum.Enum):
        state = state.value
    created_at = getattr(sandbox, "created_at", None)
    if isinstance(created_at, datetime.datetime):
        created_at = created_at.isoformat()
    return {
        "id": sandbox.id,
        "status": str(state) if state else "unknown",
        "createdAt": created_at,
    }


def _render(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(_jsonable(payload), default=str)


# ── Sandbox backend ──────────────────────────────────────────────────────


class DaytonaBackend:
    """Async facade over the synchronous Daytona SDK client.

    Every SDK call runs in the default executor so the event loop keeps
    serving other requests. SDK failures come out as NotFound or BackendError.
    """

    def __init__(self, client):
        self._client = client

    @classmethod
    def from_options(cls, options: ServerOptions) -> "DaytonaBackend":
        config = DaytonaConfig(
            api_key=options.api_key,
            api_url=options.server_url,
            target=options.target,
        )
        return cls(Daytona(config))

    async def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run one SDK call (client or per-sandbox sub-API) off the event loop."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        except OperationError:
            raise
        except Exception as e:
            raise _classify_backend_error(e) from e

    async def create(self, params=None, timeout: Optional[float] = None):
        return await self.call(self._client.create, params, **_timeout_kw(timeout))

    async def get(self, sandbox_id: str):
        return await self.call(self._client.get, sandbox_id)

    async def list(self) -> list:
        result = await self.call(self._client.list)
        # Newer SDK releases return a paginated wrapper
        return list(getattr(result, "items", result))

    async def start(self, sandbox, timeout: Optional[float] = None):
        return await self.call(self._client.start, sandbox, **_timeout_kw(timeout))

    async def stop(self, sandbox):
        return await self.call(self._client.stop, sandbox)

    async def remove(self, sandbox, timeout: Optional[float] = None):
        return await self.call(self._client.delete, sandbox, **_timeout_kw(timeout))


def _timeout_kw(timeout: Optional[float]) -> dict:
    return {} if timeout is None else {"timeout": timeout}


# ── Handle cache ─────────────────────────────────────────────────────────


class Freshness(enum.Enum):
    FRESH = "fresh"
    STALE = "stale"
    ABSENT = "absent"


@dataclass
class CacheEntry:
    id: str
    expires_at: float
    handle: Any = field(default=None, repr=False)


class HandleCache:
    """Bounded-staleness map from sandbox id to its last resolved handle.

    One entry per id, replaced on every ``put``. Past ``max_entries`` the
    least recently used entry is evicted; expired entries are swept lazily
    on ``put``. All methods are synchronous, so under asyncio a lookup/put
    pair can only interleave with another task at an ``await`` between them.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_CACHE_TTL,
        max_entries: int = DEFAULT_CACHE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl < 0:
            raise ValueError(f"cache ttl must be >= 0, got {ttl}")
        if max_entries < 1:
            raise ValueError(f"cache max_entries must be >= 1, got {max_entries}")
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: collections.OrderedDict[str, CacheEntry] = collections.OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, sandbox_id: str) -> bool:
        return sandbox_id in self._entries

    def entry(self, sandbox_id: str) -> Optional[CacheEntry]:
        return self._entries.get(sandbox_id)

    def lookup(self, sandbox_id: str) -> Freshness:
        entry = self._entries.get(sandbox_id)
        if entry is None:
            return Freshness.ABSENT
        if self._clock() < entry.expires_at:
            return Freshness.FRESH
        return Freshness.STALE

    def get(self, sandbox_id: str) -> Any:
        """Return the cached handle if the entry is fresh, else None."""
        if self.lookup(sandbox_id) is not Freshness.FRESH:
            return None
        self._entries.move_to_end(sandbox_id)
        return self._entries[sandbox_id].handle

    def put(self, sandbox_id: str, handle: Any = None, ttl: Optional[float] = None) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(
            id=sandbox_id,
            expires_at=now + (self.ttl if ttl is None else ttl),
            handle=handle,
        )
        self._entries[sandbox_id] = entry
        self._entries.move_to_end(sandbox_id)
        if len(self._entries) > self.max_entries:
            self._sweep(now)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            log.debug(f"Evicted sandbox {evicted} from cache (size={len(self._entries)})")
        return entry

    def invalidate(self, sandbox_id: str) -> bool:
        return self._entries.pop(sandbox_id, None) is not None

    def _sweep(self, now: float):
        expired = [sid for sid, e in self._entries.items() if now >= e.expires_at]
        for sid in expired:
            del self._entries[sid]
        if expired:
            log.debug(f"Swept {len(expired)} expired sandbox cache entries")


# ── Sandbox resolver ─────────────────────────────────────────────────────


class SandboxResolver:
    """Single place where a sandbox id becomes a live SDK handle.

    A fresh cache entry is returned as-is with no backend call. Stale or
    missing entries are re-fetched with ``backend.get`` and re-stamped.
    Backend failures propagate unchanged and leave the cache untouched.
    """

    def __init__(self, backend: DaytonaBackend, cache: HandleCache):
        self.backend = backend
        self.cache = cache

    async def resolve(self, sandbox_id: str):
        freshness = self.cache.lookup(sandbox_id)
        if freshness is Freshness.FRESH:
            log.debug(f"Using cached sandbox: {sandbox_id}")
            return self.cache.get(sandbox_id)

        log.debug(f"Fetching sandbox: {sandbox_id} (cache {freshness.value})")
        sandbox = await self.backend.get(sandbox_id)
        self.cache.put(sandbox_id, sandbox)
        return sandbox


# ── Operation dispatch ───────────────────────────────────────────────────


@dataclass(frozen=True)
class OperationContext:
    """Capabilities handed to every operation and resource handler."""

    backend: DaytonaBackend
    resolver: SandboxResolver
    cache: HandleCache

    async def sandbox(self, sandbox_id: str):
        return await self.resolver.resolve(sandbox_id)


Handler = Callable[[OperationContext, Any], Awaitable[Any]]


@dataclass(frozen=True)
class Operation:
    name: str
    description: str
    input_model: type
    handler: Handler
    failure: str

    def input_schema(self) -> dict:
        return self.input_model.model_json_schema()


class OperationRegistry:
    """Named, schema-validated operations. Fixed once the module is imported."""

    def __init__(self):
        self._operations: dict[str, Operation] = {}

    def __iter__(self):
        return iter(self._operations.values())

    def __len__(self) -> int:
        return len(self._operations)

    def __contains__(self, name: str) -> bool:
        return name in self._operations

    def register(self, op: Operation) -> Operation:
        if op.name in self._operations:
            raise DuplicateOperation(f"Operation already registered: {op.name}")
        self._operations[op.name] = op
        return op

    def operation(self, name: str, input_model: type, failure: str):
        """Decorator registering an async handler; its docstring is the description."""

        def decorator(fn: Handler) -> Handler:
            self.register(
                Operation(
                    name=name,
                    description=inspect.getdoc(fn) or name,
                    input_model=input_model,
                    handler=fn,
                    failure=failure,
                )
            )
            return fn

        return decorator

    def get(self, name: str) -> Operation:
        try:
            return self._operations[name]
        except KeyError:
            raise UnknownOperation(f"Unknown operation: {name}") from None

    async def invoke(self, ctx: OperationContext, name: str, raw_input: Optional[dict]) -> Any:
        op = self.get(name)
        try:
            params = op.input_model.model_validate(raw_input or {})
        except ValidationError as e:
            raise InvalidInput(f"Invalid input for {name}: {_validation_summary(e)}") from e

        try:
            return await op.handler(ctx, params)
        except InvalidInput:
            raise
        except OperationError as e:
            raise e.with_context(f"Failed to {op.failure}") from e
        except Exception as e:
            raise BackendError(f"Failed to {op.failure}: {e}") from e


def _validation_summary(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "input"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


# ── Resource views ───────────────────────────────────────────────────────

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)(\*?)\}")


@dataclass(frozen=True)
class ResourceView:
    uri_template: str
    name: str
    description: str
    handler: Handler
    mime_type: str = RESOURCE_MIME_TYPE
    pattern: re.Pattern = field(init=False, repr=False, compare=False)
    rooted: frozenset = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        regex = []
        rooted = set()
        pos = 0
        for m in _PLACEHOLDER_RE.finditer(self.uri_template):
            regex.append(re.escape(self.uri_template[pos : m.start()]))
            name, star = m.group(1), m.group(2)
            if star:
                regex.append(f"(?P<{name}>.*)")
                rooted.add(name)
            else:
                regex.append(f"(?P<{name}>[^/]+)")
            pos = m.end()
        regex.append(re.escape(self.uri_template[pos:]))
        object.__setattr__(self, "pattern", re.compile("".join(regex)))
        object.__setattr__(self, "rooted", frozenset(rooted))

    @property
    def is_template(self) -> bool:
        return bool(_PLACEHOLDER_RE.search(self.uri_template))

    def match(self, uri: str) -> Optional[dict[str, str]]:
        m = self.pattern.fullmatch(uri)
        if m is None:
            return None
        params = {}
        for key, value in m.groupdict().items():
            value = urllib.parse.unquote(value)
            if key in self.rooted:
                value = "/" + value.lstrip("/")
            params[key] = value
        return params


class ResourceRegistry:
    def __init__(self):
        self._views: list[ResourceView] = []

    def __iter__(self):
        return iter(self._views)

    def resource(self, uri_template: str, name: str):
        def decorator(fn: Handler) -> Handler:
            if any(v.uri_template == uri_template for v in self._views):
                raise DuplicateOperation(f"Resource already registered: {uri_template}")
            self._views.append(
                ResourceView(
                    uri_template=uri_template,
                    name=name,
                    description=inspect.getdoc(fn) or name,
                    handler=fn,
                )
            )
            return fn

        return decorator

    def match(self, uri: str) -> tuple[ResourceView, dict[str, str]]:
        candidates = [uri]
        if uri.endswith("/") and not uri.endswith("://"):
            candidates.append(uri.rstrip("/"))
        for candidate in candidates:
            for view in self._views:
                params = view.match(candidate)
                if params is not None:
                    return view, params
        raise NotFound(f"Unknown resource: {uri}")

    async def read(self, ctx: OperationContext, uri: str) -> str:
        view, params = self.match(uri)
        try:
            payload = await view.handler(ctx, params)
        except OperationError:
            raise
        except Exception as e:
            raise BackendError(f"Failed to read {uri}: {e}") from e
        return _render(payload)


operations = OperationRegistry()
resources = ResourceRegistry()


# ── Input schemas ────────────────────────────────────────────────────────


class _Input(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class SandboxRef(_Input):
    sandbox_id: str = Field(min_length=1, description="ID of the sandbox")


class NoInput(_Input):
    pass


class SandboxResources(_Input):
    cpu: Optional[int] = Field(default=None, ge=1, description="CPU cores")
    memory: Optional[int] = Field(default=None, ge=1, description="Memory in GiB")
    disk: Optional[int] = Field(default=None, ge=1, description="Disk in GiB")
    gpu: Optional[int] = Field(default=None, ge=0, description="GPU count")


class CreateSandboxInput(_Input):
    language: Optional[str] = Field(
        default=None,
        pattern="^(python|typescript|javascript)$",
        description="Language runtime: python, typescript or javascript",
    )
    image: Optional[str] = Field(default=None, description="Container image to boot from")
    env_vars: Optional[dict[str, str]] = Field(default=None, description="Environment variables")
    resources: Optional[SandboxResources] = Field(
        default=None, description="Resource allocation (requires image)"
    )
    auto_stop_interval: Optional[int] = Field(
        default=None, ge=0, description="Minutes of inactivity before auto-stop (0 disables)"
    )
    public: Optional[bool] = Field(default=None, description="Whether the sandbox is publicly reachable")
    timeout: Optional[float] = Field(default=None, ge=0, description="Creation timeout in seconds")


class TimeoutSandboxInput(SandboxRef):
    timeout: Optional[float] = Field(default=None, ge=0, description="Timeout in seconds")


class ExecuteCommandInput(SandboxRef):
    command: str = Field(description="Shell command to run")
    cwd: Optional[str] = Field(default=None, description="Working directory")
    timeout: Optional[int] = Field(default=None, ge=0, description="Timeout in seconds")


class RunCodeInput(SandboxRef):
    code: str = Field(description="Source code to run with the sandbox's language runtime")
    argv: Optional[list[str]] = Field(default=None, description="Command line arguments")
    env: Optional[dict[str, str]] = Field(default=None, description="Environment variables")
    timeout: Optional[int] = Field(default=None, ge=0, description="Timeout in seconds")


class SessionInput(SandboxRef):
    session_id: str = Field(min_length=1, description="ID of the session")


class SessionCommandInput(SessionInput):
    command: str = Field(description="Command to run in the session")
    run_async: Optional[bool] = Field(
        default=None, alias="async", description="Return immediately without waiting"
    )
    timeout: Optional[int] = Field(default=None, ge=0, description="Timeout in seconds")


class PathInput(SandboxRef):
    path: str = Field(description="Path inside the sandbox")


class CreateDirectoryInput(PathInput):
    mode: str = Field(default="755", pattern="^[0-7]{3,4}$", description="Octal permissions")


class UploadFileInput(SandboxRef):
    local_path: str = Field(description="Path of the file on the host")
    remote_path: str = Field(description="Destination path inside the sandbox")


class DownloadFileInput(SandboxRef):
    remote_path: str = Field(description="Path of the file inside the sandbox")
    local_path: str = Field(description="Destination path on the host")


class MoveFileInput(SandboxRef):
    source: str
    destination: str


class FindInFilesInput(PathInput):
    pattern: str = Field(description="Text to search for")


class ReplaceInFilesInput(SandboxRef):
    files: list[str] = Field(min_length=1, description="Files to edit")
    pattern: str = Field(description="Text to replace")
    new_value: str = Field(description="Replacement text")


class FilePermissionsInput(PathInput):
    owner: Optional[str] = None
    group: Optional[str] = None
    mode: Optional[str] = Field(default=None, pattern="^[0-7]{3,4}$")


class CloneInput(SandboxRef):
    url: str = Field(description="Repository URL")
    path: str = Field(description="Clone destination inside the sandbox")
    branch: Optional[str] = None
    commit_id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class StageFilesInput(PathInput):
    files: list[str] = Field(min_length=1, description="Files to stage, relative to the repo")


class CommitInput(PathInput):
    message: str
    author: str
    email: str


class RemoteInput(PathInput):
    username: Optional[str] = None
    password: Optional[str] = None


# ── Sandbox lifecycle operations ─────────────────────────────────────────


@operations.operation("create-sandbox", CreateSandboxInput, failure="create sandbox")
async def create_sandbox(ctx: OperationContext, params: CreateSandboxInput):
    """Create a new Daytona sandbox."""
    common = dict(
        language=params.language,
        env_vars=params.env_vars,
        auto_stop_interval=params.auto_stop_interval,
        public=params.public,
    )
    if params.image:
        allocation = None
        if params.resources:
            allocation = Resources(**params.resources.model_dump(exclude_none=True))
        create_params = CreateSandboxFromImageParams(
            image=params.image, resources=allocation, **common
        )
    elif params.resources:
        raise InvalidInput("resources can only be set together with image")
    else:
        create_params = CreateSandboxFromSnapshotParams(**common)

    sandbox = await ctx.backend.create(create_params, timeout=params.timeout)
    ctx.cache.put(sandbox.id, sandbox)
    log.info(f"Created sandbox {sandbox.id}")
    return _sandbox_summary(sandbox)


@operations.operation("get-sandbox", SandboxRef, failure="get sandbox")
async def get_sandbox(ctx: OperationContext, params: SandboxRef):
    """Get a sandbox by ID."""
    return _sandbox_summary(await ctx.sandbox(params.sandbox_id))


@operations.operation("list-sandboxes", NoInput, failure="list sandboxes")
async def list_sandboxes(ctx: OperationContext, params: NoInput):
    """List all available sandboxes."""
    return [_sandbox_summary(sb) for sb in await ctx.backend.list()]


@operations.operation("start-sandbox", TimeoutSandboxInput, failure="start sandbox")
async def start_sandbox(ctx: OperationContext, params: TimeoutSandboxInput):
    """Start a stopped sandbox."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.start(sandbox, timeout=params.timeout)
    ctx.cache.invalidate(params.sandbox_id)
    log.info(f"Started sandbox {params.sandbox_id}")
    return f"Sandbox {params.sandbox_id} started successfully"


@operations.operation("stop-sandbox", SandboxRef, failure="stop sandbox")
async def stop_sandbox(ctx: OperationContext, params: SandboxRef):
    """Stop a running sandbox."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.stop(sandbox)
    ctx.cache.invalidate(params.sandbox_id)
    log.info(f"Stopped sandbox {params.sandbox_id}")
    return f"Sandbox {params.sandbox_id} stopped successfully"


@operations.operation("remove-sandbox", TimeoutSandboxInput, failure="remove sandbox")
async def remove_sandbox(ctx: OperationContext, params: TimeoutSandboxInput):
    """Remove a sandbox permanently."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.remove(sandbox, timeout=params.timeout)
    ctx.cache.invalidate(params.sandbox_id)
    log.info(f"Removed sandbox {params.sandbox_id}")
    return f"Sandbox {params.sandbox_id} removed successfully"


# ── Process operations ───────────────────────────────────────────────────


@operations.operation("execute-command", ExecuteCommandInput, failure="execute command")
async def execute_command(ctx: OperationContext, params: ExecuteCommandInput):
    """Execute a shell command in a sandbox.

    Returns the exit code and combined output.
    """
    sandbox = await ctx.sandbox(params.sandbox_id)
    result = await ctx.backend.call(
        sandbox.process.exec, params.command, cwd=params.cwd, timeout=params.timeout
    )
    return {"exitCode": result.exit_code, "output": _truncate(result.result or "")}


@operations.operation("run-code", RunCodeInput, failure="run code")
async def run_code(ctx: OperationContext, params: RunCodeInput):
    """Run code directly in a sandbox using its language runtime."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    code_params = None
    if params.argv is not None or params.env is not None:
        code_params = CodeRunParams(argv=params.argv, env=params.env)
    result = await ctx.backend.call(
        sandbox.process.code_run, params.code, params=code_params, timeout=params.timeout
    )
    return {"exitCode": result.exit_code, "output": _truncate(result.result or "")}


@operations.operation("create-session", SessionInput, failure="create session")
async def create_session(ctx: OperationContext, params: SessionInput):
    """Create a persistent shell session in a sandbox."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.call(sandbox.process.create_session, params.session_id)
    return f"Session {params.session_id} created successfully"


@operations.operation(
    "execute-session-command", SessionCommandInput, failure="execute session command"
)
async def execute_session_command(ctx: OperationContext, params: SessionCommandInput):
    """Execute a command in an existing session.

    With async=true the command keeps running and only its ID is returned.
    """
    sandbox = await ctx.sandbox(params.sandbox_id)
    request = SessionExecuteRequest(command=params.command, run_async=bool(params.run_async))
    result = await ctx.backend.call(
        sandbox.process.execute_session_command,
        params.session_id,
        request,
        timeout=params.timeout,
    )
    output = getattr(result, "output", None)
    return {
        "cmdId": getattr(result, "cmd_id", None),
        "output": _truncate(output) if output else output,
        "exitCode": getattr(result, "exit_code", None),
    }


@operations.operation("delete-session", SessionInput, failure="delete session")
async def delete_session(ctx: OperationContext, params: SessionInput):
    """Delete a session."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.call(sandbox.process.delete_session, params.session_id)
    return f"Session {params.session_id} deleted successfully"


@operations.operation("list-sessions", SandboxRef, failure="list sessions")
async def list_sessions(ctx: OperationContext, params: SandboxRef):
    """List all active sessions in a sandbox."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    return await ctx.backend.call(sandbox.process.list_sessions)


# ── File operations ──────────────────────────────────────────────────────


@operations.operation("list-files", PathInput, failure="list files")
async def list_files(ctx: OperationContext, params: PathInput):
    """List files in a sandbox directory."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    return await ctx.backend.call(sandbox.fs.list_files, params.path)


@operations.operation("create-directory", CreateDirectoryInput, failure="create directory")
async def create_directory(ctx: OperationContext, params: CreateDirectoryInput):
    """Create a directory in a sandbox."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.call(sandbox.fs.create_folder, params.path, params.mode)
    return f"Directory {params.path} created successfully"


@operations.operation("upload-file", UploadFileInput, failure="upload file")
async def upload_file(ctx: OperationContext, params: UploadFileInput):
    """Copy a file from the host into a sandbox."""
    local_path = os.path.expanduser(params.local_path)
    if not os.path.isfile(local_path):
        raise NotFound(f"{local_path} does not exist on host")
    sandbox = await ctx.sandbox(params.sandbox_id)
    with open(local_path, "rb") as f:
        data = f.read()
    t0 = time.perf_counter()
    await ctx.backend.call(sandbox.fs.upload_file, data, params.remote_path)
    elapsed = (time.perf_counter() - t0) * 1000
    return (
        f"Uploaded {local_path} -> {params.remote_path} "
        f"({_humanize_bytes(len(data))}, {elapsed:.0f}ms)"
    )


@operations.operation("download-file", DownloadFileInput, failure="download file")
async def download_file(ctx: OperationContext, params: DownloadFileInput):
    """Copy a file from a sandbox to the host."""
    local_path = os.path.expanduser(params.local_path)
    sandbox = await ctx.sandbox(params.sandbox_id)
    t0 = time.perf_counter()
    data = await ctx.backend.call(sandbox.fs.download_file, params.remote_path)
    os.makedirs(os.path.dirname(local_path) or ".", exist_ok=True)
    with open(local_path, "wb") as f:
        f.write(data)
    elapsed = (time.perf_counter() - t0) * 1000
    return (
        f"Downloaded {params.remote_path} -> {local_path} "
        f"({_humanize_bytes(len(data))}, {elapsed:.0f}ms)"
    )


@operations.operation("delete-file", PathInput, failure="delete file/directory")
async def delete_file(ctx: OperationContext, params: PathInput):
    """Delete a file or directory from a sandbox.

    Directories are removed together with their contents.
    """
    sandbox = await ctx.sandbox(params.sandbox_id)
    kwargs = {}
    # Older SDK releases take only a path and cannot remove non-empty directories
    if "recursive" in inspect.signature(sandbox.fs.delete_file).parameters:
        kwargs["recursive"] = True
    await ctx.backend.call(sandbox.fs.delete_file, params.path, **kwargs)
    return f"File/directory {params.path} deleted successfully"


@operations.operation("move-file", MoveFileInput, failure="move file/directory")
async def move_file(ctx: OperationContext, params: MoveFileInput):
    """Move or rename a file or directory."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.call(sandbox.fs.move_files, params.source, params.destination)
    return f"Moved {params.source} to {params.destination} successfully"


@operations.operation("find-in-files", FindInFilesInput, failure="find in files")
async def find_in_files(ctx: OperationContext, params: FindInFilesInput):
    """Search for text in files under a path."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    return await ctx.backend.call(sandbox.fs.find_files, params.path, params.pattern)


@operations.operation("replace-in-files", ReplaceInFilesInput, failure="replace in files")
async def replace_in_files(ctx: OperationContext, params: ReplaceInFilesInput):
    """Replace text in multiple files."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    return await ctx.backend.call(
        sandbox.fs.replace_in_files, params.files, params.pattern, params.new_value
    )


@operations.operation(
    "set-file-permissions", FilePermissionsInput, failure="set file permissions"
)
async def set_file_permissions(ctx: OperationContext, params: FilePermissionsInput):
    """Set file permissions and ownership."""
    if params.owner is None and params.group is None and params.mode is None:
        raise InvalidInput("set-file-permissions needs at least one of owner, group, mode")
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.call(
        sandbox.fs.set_file_permissions,
        params.path,
        owner=params.owner,
        group=params.group,
        mode=params.mode,
    )
    return f"File permissions set successfully for {params.path}"


# ── Git operations ───────────────────────────────────────────────────────


@operations.operation("clone-repository", CloneInput, failure="clone repository")
async def clone_repository(ctx: OperationContext, params: CloneInput):
    """Clone a Git repository into a sandbox."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.call(
        sandbox.git.clone,
        params.url,
        params.path,
        branch=params.branch,
        commit_id=params.commit_id,
        username=params.username,
        password=params.password,
    )
    return f"Repository {params.url} cloned successfully to {params.path}"


@operations.operation("get-git-status", PathInput, failure="get Git status")
async def get_git_status(ctx: OperationContext, params: PathInput):
    """Get Git repository status."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    return await ctx.backend.call(sandbox.git.status, params.path)


@operations.operation("list-branches", PathInput, failure="list branches")
async def list_branches(ctx: OperationContext, params: PathInput):
    """List branches in a Git repository."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    return await ctx.backend.call(sandbox.git.branches, params.path)


@operations.operation("stage-files", StageFilesInput, failure="stage files")
async def stage_files(ctx: OperationContext, params: StageFilesInput):
    """Stage files for commit."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.call(sandbox.git.add, params.path, params.files)
    return f"Staged {len(params.files)} file(s) in {params.path}"


@operations.operation("commit-changes", CommitInput, failure="commit changes")
async def commit_changes(ctx: OperationContext, params: CommitInput):
    """Commit staged changes."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.call(
        sandbox.git.commit, params.path, params.message, params.author, params.email
    )
    return f'Changes committed successfully with message: "{params.message}"'


@operations.operation("pull-changes", RemoteInput, failure="pull changes")
async def pull_changes(ctx: OperationContext, params: RemoteInput):
    """Pull changes from the remote repository."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.call(
        sandbox.git.pull, params.path, username=params.username, password=params.password
    )
    return f"Changes pulled successfully into {params.path}"


@operations.operation("push-changes", RemoteInput, failure="push changes")
async def push_changes(ctx: OperationContext, params: RemoteInput):
    """Push changes to the remote repository."""
    sandbox = await ctx.sandbox(params.sandbox_id)
    await ctx.backend.call(
        sandbox.git.push, params.path, username=params.username, password=params.password
    )
    return f"Changes pushed successfully from {params.path}"


# ── Resources ────────────────────────────────────────────────────────────


@resources.resource("daytona://sandboxes", name="sandboxes")
async def sandboxes_resource(ctx: OperationContext, params: dict):
    """All sandboxes visible to the configured API key."""
    return [_sandbox_summary(sb) for sb in await ctx.backend.list()]


@resources.resource("daytona://sandboxes/{sandbox_id}", name="sandbox")
async def sandbox_resource(ctx: OperationContext, params: dict):
    """A single sandbox: id, status and creation time."""
    return _sandbox_summary(await ctx.sandbox(params["sandbox_id"]))


@resources.resource("daytona://sandboxes/{sandbox_id}/files/{path*}", name="sandbox-files")
async def files_resource(ctx: OperationContext, params: dict):
    """Directory listing inside a sandbox."""
    sandbox = await ctx.sandbox(params["sandbox_id"])
    return await ctx.backend.call(sandbox.fs.list_files, params["path"])


@resources.resource("daytona://sandboxes/{sandbox_id}/sessions", name="sandbox-sessions")
async def sessions_resource(ctx: OperationContext, params: dict):
    """Process sessions in a sandbox."""
    sandbox = await ctx.sandbox(params["sandbox_id"])
    return await ctx.backend.call(sandbox.process.list_sessions)


@resources.resource(
    "daytona://sandboxes/{sandbox_id}/sessions/{session_id}", name="sandbox-session"
)
async def session_resource(ctx: OperationContext, params: dict):
    """One process session and its commands."""
    sandbox = await ctx.sandbox(params["sandbox_id"])
    sessions = await ctx.backend.call(sandbox.process.list_sessions)
    for session in sessions:
        if getattr(session, "session_id", None) == params["session_id"]:
            return session
    raise NotFound(f"Session not found: {params['session_id']}")


@resources.resource("daytona://sandboxes/{sandbox_id}/git/{repo_path*}", name="sandbox-git")
async def git_resource(ctx: OperationContext, params: dict):
    """Git status of a repository inside a sandbox."""
    sandbox = await ctx.sandbox(params["sandbox_id"])
    return await ctx.backend.call(sandbox.git.status, params["repo_path"])


# ── MCP Server ───────────────────────────────────────────────────────────

INSTRUCTIONS = (
    "You have access to Daytona sandboxes: isolated remote environments. "
    "Use create-sandbox to make one and pass its ID as sandboxId to every other tool. "
    "Use execute-command for shell commands and run-code for source code. "
    "Sessions (create-session, execute-session-command) keep shell state between commands. "
    "File tools manage the sandbox filesystem; upload-file/download-file move files "
    "between the host and a sandbox. Git tools clone, inspect, commit, pull and push. "
    "Failed calls return a JSON error with a kind (InvalidInput, NotFound, BackendError, "
    "UnknownOperation) and a message."
)


class DaytonaMcpServer:
    """Owns the backend, handle cache and resolver, and binds the
    operation and resource registries to an MCP low-level server."""

    def __init__(
        self,
        backend: DaytonaBackend,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        cache_size: int = DEFAULT_CACHE_SIZE,
        operation_registry: Optional[OperationRegistry] = None,
        resource_registry: Optional[ResourceRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.cache = HandleCache(ttl=cache_ttl, max_entries=cache_size, clock=clock)
        self.resolver = SandboxResolver(backend, self.cache)
        self.context = OperationContext(backend, self.resolver, self.cache)
        self.operations = operations if operation_registry is None else operation_registry
        self.resources = resources if resource_registry is None else resource_registry
        self.server = Server(SERVER_NAME, version=SERVER_VERSION, instructions=INSTRUCTIONS)
        self._bind()

    @classmethod
    def from_options(cls, options: ServerOptions) -> "DaytonaMcpServer":
        return cls(
            DaytonaBackend.from_options(options),
            cache_ttl=options.cache_ttl,
            cache_size=options.cache_size,
        )

    async def invoke(self, name: str, raw_input: Optional[dict] = None) -> Any:
        return await self.operations.invoke(self.context, name, raw_input)

    async def read(self, uri: str) -> str:
        return await self.resources.read(self.context, uri)

    def list_tools(self) -> list[Tool]:
        return [
            Tool(name=op.name, description=op.description, inputSchema=op.input_schema())
            for op in self.operations
        ]

    def list_resources(self) -> list[Resource]:
        return [
            Resource(
                uri=v.uri_template,
                name=v.name,
                description=v.description,
                mimeType=v.mime_type,
            )
            for v in self.resources
            if not v.is_template
        ]

    def list_resource_templates(self) -> list[ResourceTemplate]:
        return [
            ResourceTemplate(
                uriTemplate=v.uri_template,
                name=v.name,
                description=v.description,
                mimeType=v.mime_type,
            )
            for v in self.resources
            if v.is_template
        ]

    async def call_tool(self, name: str, arguments: Optional[dict]) -> list[TextContent]:
        t0 = time.perf_counter()
        try:
            payload = await self.invoke(name, arguments)
        except OperationError as e:
            log.warning(f"Tool {name} failed: [{e.kind}] {e.message}")
            raise
        log.debug(f"Tool {name} ok ({(time.perf_counter() - t0) * 1000:.0f}ms)")
        return [TextContent(type="text", text=_render(payload))]

    async def read_resource(self, uri) -> list[ReadResourceContents]:
        uri = str(uri)
        try:
            text = await self.read(uri)
        except OperationError as e:
            log.warning(f"Resource {uri} failed: [{e.kind}] {e.message}")
            raise
        return [ReadResourceContents(content=text, mime_type=RESOURCE_MIME_TYPE)]

    def _bind(self):
        server = self.server

        @server.list_tools()
        async def _list_tools() -> list[Tool]:
            return self.list_tools()

        # Inputs are validated by the operation registry so failures carry our error kinds
        @server.call_tool(validate_input=False)
        async def _call_tool(name: str, arguments: dict) -> list[TextContent]:
            return await self.call_tool(name, arguments)

        @server.list_resources()
        async def _list_resources() -> list[Resource]:
            return self.list_resources()

        @server.list_resource_templates()
        async def _list_resource_templates() -> list[ResourceTemplate]:
            return self.list_resource_templates()

        @server.read_resource()
        async def _read_resource(uri) -> list[ReadResourceContents]:
            return await self.read_resource(uri)

    async def run_stdio(self):
        log.info(
            f"Daytona MCP server ready ({len(self.operations)} tools, "
            f"cache ttl={self.cache.ttl}s, max={self.cache.max_entries})"
        )
        async with stdio_server() as (read_stream, write_stream):
            await self.server.run(
                read_stream,
                write_stream,
                self.server.create_initialization_options(),
            )


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    try:
        options = ServerOptions.from_env()
    except ValueError as e:
        log.error(f"Failed to start Daytona MCP server: {e}")
        sys.exit(1)

    if options.verbose:
        log.setLevel(logging.DEBUG)
    log.debug(f"Server URL: {options.server_url}")
    log.debug(f"Target: {options.target}")

    server = DaytonaMcpServer.from_options(options)
    try:
        asyncio.run(server.run_stdio())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
