"""
Sandbox for the REPL strategy.

- DockerRuntime: finds the docker binary (Homebrew and system locations,
  Colima socket), runs docker commands asynchronously, builds the image on demand
- SandboxSession: one isolated container per start()/stop() pair; no network,
  capped memory/CPU, target mounted read-only at /code, tmpfs scratch at /workspace
- SandboxBridge: file-based request/response channel that lets code running
  inside the sandbox call llm_query()/llm_query_batched() on the host model
- LLM_HELPER_TEMPLATE: the helper module installed in the sandbox

The bridge polls from outside the sandbox while the code is executing, so a
sandboxed llm_query() call gets its answer before the execution returns.
"""

import asyncio
import json
import logging
import os
import secrets
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any, Protocol

from .config import AuditConfig

logger = logging.getLogger(__name__)


SANDBOX_WORKSPACE = "/workspace"
SANDBOX_CODE_DIR = "/code"
REQUEST_FILE = ".llm_request.json"
RESPONSE_FILE = ".llm_response.json"
HELPER_MODULE = "_llm_helper"

SINGLE_TIMEOUT_SENTINEL = "[ERROR: LLM query timed out]"
BATCHED_TIMEOUT_SENTINEL = "[ERROR: LLM batch query timed out]"
OUTPUT_TRUNCATED_MARKER = "\n... [output truncated]"

SANDBOX_DOCKERFILE = """FROM python:3.12-slim
RUN pip install --no-cache-dir tree-sitter tree-sitter-languages networkx jedi rope || true
RUN apt-get update && apt-get install -y --no-install-recommends ripgrep jq && rm -rf /var/lib/apt/lists/*
RUN mkdir -p /code /workspace
WORKDIR /workspace
"""

# Rendered with string.Template: $workspace, $poll_interval, $single_polls, $batched_polls
LLM_HELPER_TEMPLATE = '''"""Host model access from inside the sandbox."""
import json
import os
import time

_WORKSPACE = "$workspace"
_REQUEST_PATH = os.path.join(_WORKSPACE, ".llm_request.json")
_RESPONSE_PATH = os.path.join(_WORKSPACE, ".llm_response.json")
_POLL_INTERVAL = $poll_interval


def _send(request):
    if os.path.exists(_RESPONSE_PATH):
        os.remove(_RESPONSE_PATH)
    tmp_path = _REQUEST_PATH + ".tmp"
    with open(tmp_path, "w") as f:
        json.dump(request, f)
    os.replace(tmp_path, _REQUEST_PATH)


def _wait_for_response(polls):
    for _ in range(polls):
        if os.path.exists(_RESPONSE_PATH):
            with open(_RESPONSE_PATH) as f:
                response = json.load(f)
            os.remove(_RESPONSE_PATH)
            return response
        time.sleep(_POLL_INTERVAL)
    return None


def llm_query(prompt):
    """Send a prompt to the host model and return its answer."""
    _send({"type": "single", "prompt": prompt})
    response = _wait_for_response($single_polls)
    if response is None:
        return "[ERROR: LLM query timed out]"
    return response.get("result", "")


def llm_query_batched(prompts):
    """Send several prompts at once; answers come back in the same order."""
    prompts = list(prompts)
    _send({"type": "batched", "prompts": prompts})
    response = _wait_for_response($batched_polls)
    if response is None:
        return ["[ERROR: LLM batch query timed out]"] * len(prompts)
    return response.get("results", [])
'''


def render_llm_helper(
    workspace: str = SANDBOX_WORKSPACE,
    poll_interval: float = 0.1,
    single_timeout: float = 30.0,
    batched_timeout: float = 60.0,
) -> str:
    """Helper source with its paths and poll budget filled in."""
    return Template(LLM_HELPER_TEMPLATE).substitute(
        workspace=workspace,
        poll_interval=repr(poll_interval),
        single_polls=max(1, int(round(single_timeout / poll_interval))),
        batched_polls=max(1, int(round(batched_timeout / poll_interval))),
    )


class SandboxError(Exception):
    """The sandbox could not be started or driven."""


class SandboxUnavailableError(SandboxError):
    """No container runtime or image is available."""


@dataclass
class ExecResult:
    """Outcome of running one code block in the sandbox."""
    stdout: str
    stderr: str
    exit_code: int

    def format(self) -> str:
        """Feedback text for the model."""
        output = self.stdout
        if self.stderr:
            output += f"\n[stderr]: {self.stderr}"
        if self.exit_code != 0:
            output += f"\n[exit code: {self.exit_code}]"
        return output or "[no output]"


def truncate_output(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + OUTPUT_TRUNCATED_MARKER
    return text


# =============================================================================
# Container runtime
# =============================================================================

class DockerRuntime:
    """Locates and drives the docker CLI."""

    BINARY_CANDIDATES = (
        str(Path.home() / ".homebrew" / "bin" / "docker"),
        "/opt/homebrew/bin/docker",
        "/usr/local/bin/docker",
        "docker",
    )

    def __init__(self, binary: str | None = None):
        self._binary = binary
        self.env = self.docker_env()

    @staticmethod
    def docker_env() -> dict[str, str]:
        """Process environment, pointed at a Colima socket when one exists."""
        env = dict(os.environ)
        home = Path.home()
        for socket in (home / ".colima" / "default" / "docker.sock", home / ".colima" / "docker.sock"):
            if socket.exists():
                env["DOCKER_HOST"] = f"unix://{socket}"
                break
        # BuildKit disagrees with Colima's buildx API version
        env["DOCKER_BUILDKIT"] = "0"
        return env

    @property
    def binary(self) -> str:
        if self._binary is None:
            self._binary = self._find_binary()
        return self._binary

    def _find_binary(self) -> str:
        for candidate in self.BINARY_CANDIDATES:
            try:
                subprocess.run(
                    [candidate, "--version"],
                    capture_output=True,
                    timeout=5,
                    check=True,
                )
                return candidate
            except (OSError, subprocess.SubprocessError):
                continue
        return "docker"

    async def run(
        self,
        *args: str,
        input_data: bytes | None = None,
        timeout: float = 30.0,
    ) -> tuple[int, str, str]:
        """Run `docker <args>`; returns (returncode, stdout, stderr)."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except OSError as e:
            raise SandboxUnavailableError(f"docker not runnable: {e}") from e

        try:
            stdout_data, stderr_data = await asyncio.wait_for(
                process.communicate(input_data), timeout=timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise SandboxError(f"docker {args[0]} timed out after {timeout:g}s")

        return (
            process.returncode,
            stdout_data.decode("utf-8", errors="replace"),
            stderr_data.decode("utf-8", errors="replace"),
        )

    async def is_available(self) -> bool:
        try:
            returncode, _, _ = await self.run("info", timeout=10)
        except SandboxError:
            return False
        return returncode == 0

    async def ensure_image(self, image: str) -> None:
        """Build the sandbox image from the embedded Dockerfile if it is missing."""
        returncode, _, _ = await self.run("image", "inspect", image, timeout=30)
        if returncode == 0:
            return

        logger.info(f"[SANDBOX] Building image {image}")
        with tempfile.TemporaryDirectory(prefix="rlm-audit-sandbox-") as build_dir:
            Path(build_dir, "Dockerfile").write_text(SANDBOX_DOCKERFILE, encoding="utf-8")
            returncode, _, stderr = await self.run("build", "-t", image, build_dir, timeout=180)
        if returncode != 0:
            raise SandboxUnavailableError(
                f"Failed to build sandbox image {image}: {stderr.strip()[-500:]}"
            )


# =============================================================================
# Session
# =============================================================================

class SandboxChannel(Protocol):
    """File access into the sandbox scratch area, as used by the bridge."""

    async def read_file(self, path: str) -> str | None: ...

    async def remove_file(self, path: str) -> None: ...

    async def write_file(self, path: str, content: str) -> None: ...


class SandboxSession:
    """
    One isolated execution environment.

    At most one container lives between start() and stop(); stop() is safe
    to call repeatedly and never raises.
    """

    def __init__(self, runtime: DockerRuntime | None = None, config: AuditConfig | None = None):
        self.runtime = runtime or DockerRuntime()
        self.config = config or AuditConfig()
        self.handle: str | None = None

    @property
    def running(self) -> bool:
        return self.handle is not None

    async def start(self, target_path: str) -> None:
        if self.running:
            raise SandboxError("sandbox session already started")

        if not await self.runtime.is_available():
            raise SandboxUnavailableError("Docker is not available. Is the daemon running?")
        await self.runtime.ensure_image(self.config.sandbox_image)

        target = Path(target_path).resolve()
        name = f"rlm-audit-{secrets.token_hex(4)}"
        returncode, stdout, stderr = await self.runtime.run(
            "run", "-d",
            "--name", name,
            "--network=none",
            f"--memory={self.config.sandbox_memory}",
            f"--cpus={self.config.sandbox_cpus}",
            "-v", f"{target}:{SANDBOX_CODE_DIR}:ro",
            "--tmpfs", f"{SANDBOX_WORKSPACE}:rw,size={self.config.sandbox_scratch_size}",
            self.config.sandbox_image,
            "sleep", "3600",
            timeout=60,
        )
        if returncode != 0:
            raise SandboxError(f"Failed to start sandbox container: {stderr.strip()}")

        self.handle = stdout.strip()
        logger.info(f"[SANDBOX] Started container {self.handle[:12]} for {target}")

        helper = render_llm_helper(
            SANDBOX_WORKSPACE,
            poll_interval=self.config.sandbox_poll_interval_seconds,
        )
        await self.write_file(f"{SANDBOX_WORKSPACE}/{HELPER_MODULE}.py", helper)

    def _require_handle(self) -> str:
        if self.handle is None:
            raise SandboxError("sandbox session not started")
        return self.handle

    async def execute(self, code: str) -> ExecResult:
        """Run one Python code block with the llm_query helpers pre-imported."""
        handle = self._require_handle()
        timeout = self.config.sandbox_exec_timeout_seconds
        limit = self.config.sandbox_output_chars

        script = f"from {HELPER_MODULE} import llm_query, llm_query_batched\n{code}\n"
        await self.write_file(f"{SANDBOX_WORKSPACE}/_exec.py", script)

        try:
            returncode, stdout, stderr = await self.runtime.run(
                "exec", "-w", SANDBOX_WORKSPACE, handle,
                "timeout", f"{timeout:g}", "python3", f"{SANDBOX_WORKSPACE}/_exec.py",
                timeout=timeout + 5,
            )
        except SandboxUnavailableError:
            raise
        except SandboxError as e:
            return ExecResult(stdout="", stderr=str(e), exit_code=124)

        return ExecResult(
            stdout=truncate_output(stdout.strip(), limit),
            stderr=truncate_output(stderr.strip(), limit),
            exit_code=returncode,
        )

    async def read_file(self, path: str) -> str | None:
        handle = self._require_handle()
        returncode, stdout, _ = await self.runtime.run("exec", handle, "cat", path, timeout=5)
        return stdout if returncode == 0 else None

    async def remove_file(self, path: str) -> None:
        handle = self._require_handle()
        await self.runtime.run("exec", handle, "rm", "-f", path, timeout=5)

    async def write_file(self, path: str, content: str) -> None:
        """Write through a temp file and rename, so readers never see a partial file."""
        handle = self._require_handle()
        returncode, _, stderr = await self.runtime.run(
            "exec", "-i", handle, "sh", "-c", 'cat > "$1.tmp" && mv "$1.tmp" "$1"', "sh", path,
            input_data=content.encode("utf-8"),
            timeout=15,
        )
        if returncode != 0:
            raise SandboxError(f"Failed to write {path} in sandbox: {stderr.strip()}")

    async def stop(self) -> None:
        if self.handle is None:
            return
        handle, self.handle = self.handle, None
        try:
            await self.runtime.run("rm", "-f", handle, timeout=15)
            logger.info(f"[SANDBOX] Removed container {handle[:12]}")
        except SandboxError as e:
            logger.warning(f"[SANDBOX] Failed to remove container {handle[:12]}: {e}")


# =============================================================================
# Bridge
# =============================================================================

class SandboxBridge:
    """
    Host side of the nested-query protocol.

    Request  {"type": "single", "prompt": str} | {"type": "batched", "prompts": [str]}
    Response {"result": str}                   | {"results": [str]}

    One outstanding request at a time: the host removes the request file
    before answering, and writes the response atomically.
    """

    SUBQUERY_SYSTEM_PROMPT = "You are a security analysis assistant. Answer concisely."

    def __init__(
        self,
        channel: SandboxChannel,
        executor: Any,
        workspace: str = SANDBOX_WORKSPACE,
        poll_interval: float = 0.1,
    ):
        self.channel = channel
        self.executor = executor
        self.request_path = f"{workspace}/{REQUEST_FILE}"
        self.response_path = f"{workspace}/{RESPONSE_FILE}"
        self.poll_interval = poll_interval
        self.requests_served = 0
        self.poll_failures = 0

    async def answer(self, request: Any) -> dict[str, Any]:
        """Perform the model call(s) a decoded request asks for."""
        if isinstance(request, dict) and request.get("type") == "single" and isinstance(request.get("prompt"), str):
            result = await self.executor.query(self.SUBQUERY_SYSTEM_PROMPT, request["prompt"])
            return {"result": result}

        if (
            isinstance(request, dict)
            and request.get("type") == "batched"
            and isinstance(request.get("prompts"), list)
            and all(isinstance(p, str) for p in request["prompts"])
        ):
            results = await self.executor.query_batched(
                [(self.SUBQUERY_SYSTEM_PROMPT, prompt) for prompt in request["prompts"]]
            )
            return {"results": results}

        logger.warning("[SANDBOX] Malformed llm request from sandbox")
        if isinstance(request, dict) and isinstance(request.get("prompts"), list):
            return {"results": ["[ERROR: malformed LLM request]"] * len(request["prompts"])}
        return {"result": "[ERROR: malformed LLM request]"}

    async def poll_once(self) -> bool:
        """Serve a pending request if there is one. Returns True if it did."""
        raw = await self.channel.read_file(self.request_path)
        if not raw or not raw.strip():
            return False

        await self.channel.remove_file(self.request_path)
        try:
            request = json.loads(raw)
        except json.JSONDecodeError:
            request = None

        response = await self.answer(request)
        await self.channel.write_file(self.response_path, json.dumps(response))
        self.requests_served += 1
        logger.debug(f"[SANDBOX] Served llm request #{self.requests_served}")
        return True

    async def serve(self, stop: asyncio.Event) -> None:
        """
        Poll until `stop` is set.

        A failed poll is logged and polling continues; a request lost that way
        times out inside the sandbox and its caller gets the timeout sentinel.
        """
        while not stop.is_set():
            try:
                served = await self.poll_once()
            except SandboxError as e:
                self.poll_failures += 1
                logger.warning(f"[SANDBOX] Bridge poll failed: {e}")
                served = False
            if not served:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def run_alongside(self, operation):
        """Await `operation` while serving requests it makes; returns its result."""
        stop = asyncio.Event()
        server = asyncio.create_task(self.serve(stop))
        try:
            return await operation
        finally:
            stop.set()
            # the operation's outcome wins over a bridge failure
            [outcome] = await asyncio.gather(server, return_exceptions=True)
            if isinstance(outcome, Exception):
                logger.error(f"[SANDBOX] Bridge stopped with an error: {outcome!r}")
