"""external generation jobs.

a job takes an iteration prompt, runs for as long as the agent needs and
ends with exactly one JobOutcome. the canvas never looks inside the job.

runners:
- SubprocessJobRunner: pipes the prompt into an agent cli (cursor agent by
  default), logs its output, and guards against orphaned processes with a
  lockfile.
- ClaudeJobRunner: runs the prompt through claude-agent-sdk with file tools.
- MockJobRunner: scripted outcomes for tests and --mock mode.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import signal
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient

from .config import DEPTH_OPTIONS, GENERATION_LOCKFILE_FILENAME, MODELS_CACHE_TTL, MODELS_COMMAND_TIMEOUT
from .errors import ModelListError
from .listing import component_name_from_id
from .logger import get_logger

logger = get_logger(__name__)

KILL_GRACE_SECONDS = 2.0


@dataclass
class JobOutcome:
    """terminal event of a job."""

    success: bool
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None


@dataclass
class JobHandle:
    """a started job. await wait() for its single outcome."""

    id: str
    component_id: str
    started_at: float
    log_path: Optional[Path] = None
    _task: Optional[asyncio.Task] = field(default=None, repr=False)
    _process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def wait(self) -> JobOutcome:
        if self._task is None:
            raise RuntimeError(f"job {self.id} was never started")
        return await asyncio.shield(self._task)


@runtime_checkable
class JobRunner(Protocol):
    """protocol for generation runners (real or mock)."""

    async def start(
        self,
        prompt: str,
        count: int,
        component_id: str = "component",
        model: Optional[str] = None,
    ) -> JobHandle:
        ...

    async def cancel(self, handle: JobHandle) -> None:
        ...


def sanitize_component_id(component_id: str) -> str:
    """safe for use in file names."""
    return re.sub(r"[^A-Za-z0-9_-]", "_", str(component_id))[:200] or "component"


def _new_handle(component_id: str, coro: Awaitable[JobOutcome], **kwargs) -> JobHandle:
    handle = JobHandle(
        id=f"{sanitize_component_id(component_id)}-{uuid.uuid4().hex[:8]}",
        component_id=component_id,
        started_at=time.time(),
        **kwargs,
    )
    handle._task = asyncio.ensure_future(coro)
    return handle


# --- models and chat logs ---

# `model-id - Label  (default)`
MODEL_LINE_PATTERN = re.compile(r"^(\S+)\s+-\s+(.+?)(?:\s+\((?:default|current)\))*\s*$")


@dataclass(frozen=True)
class ModelOption:
    value: str  # passed as --model; empty means the agent's default
    label: str

    def to_dict(self) -> dict:
        return {"value": self.value, "label": self.label}


AUTO_MODEL = ModelOption(value="", label="Auto (Default)")


def parse_models_output(output: str) -> list[ModelOption]:
    """parse the agent cli's model listing. the first entry is always auto."""
    models = [AUTO_MODEL]
    for line in output.splitlines():
        match = MODEL_LINE_PATTERN.match(line.strip())
        if match:
            models.append(ModelOption(value=match.group(1), label=match.group(2).strip()))
    return models


def latest_chat_log(temp_dir: Path) -> Optional[Path]:
    """newest chat-*.txt log in temp_dir, or None."""
    temp_dir = Path(temp_dir)
    if not temp_dir.is_dir():
        return None
    logs = [p for p in temp_dir.glob("chat-*.txt") if p.is_file()]
    if not logs:
        return None
    return max(logs, key=lambda p: (p.stat().st_mtime, p.name))


def build_iteration_prompt(
    component_id: str,
    source_path: str,
    count: int,
    depth: str = "shell",
    custom_instructions: Optional[str] = None,
    component_name: Optional[str] = None,
    iterations_dir: str = "src/app/playground/iterations",
    parent_ref: Optional[str] = None,
) -> str:
    """the iteration request sent to the agent."""
    name = component_name or component_name_from_id(component_id)
    depth_label = DEPTH_OPTIONS.get(depth, DEPTH_OPTIONS["shell"])

    custom = ""
    if custom_instructions and custom_instructions.strip():
        custom = f"\nCUSTOM INSTRUCTIONS:\n{custom_instructions.strip()}\n"

    source_tag = f"\n- Add `@source {parent_ref}` to the metadata comment" if parent_ref else ""

    return f"""ITERATION REQUEST
═════════════════

Component: {name}
Source: {source_path}
Iterations requested: {count}
Depth: {depth_label}

━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

INSTRUCTIONS

1. Read the source component at the path above
2. Generate {count} variations
3. Save each as: {iterations_dir}/{name}.iteration-{{n}}.tsx
   using the next unused numbers for n
{custom}
CONSTRAINTS
- Keep props interface identical
- Use only existing Tailwind classes
- Include a metadata comment with @mode and @description{source_tag}
- Make each iteration meaningfully different

━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

Generate the iterations now."""


class MockJobRunner:
    """scripted runner for tests and offline use.

    outcome: returned by every job. hold: when True, jobs wait until
    release() (or cancel) instead of finishing after delay. iterations_dir:
    when set, a successful job writes `count` stub iteration files there.
    """

    def __init__(
        self,
        outcome: Optional[JobOutcome] = None,
        delay: float = 0.0,
        hold: bool = False,
        iterations_dir: Optional[Path] = None,
    ):
        self.outcome = outcome or JobOutcome(success=True, output="mock generation complete", exit_code=0)
        self.delay = delay
        self.hold = hold
        self.iterations_dir = Path(iterations_dir) if iterations_dir else None
        self.calls: list[tuple[str, int]] = []
        self.cancelled: list[str] = []
        self._release: Optional[asyncio.Event] = None
        self._result: dict[str, JobOutcome] = {}

    async def start(
        self,
        prompt: str,
        count: int,
        component_id: str = "component",
        model: Optional[str] = None,
    ) -> JobHandle:
        self.calls.append((prompt, count))
        if self.hold:
            self._release = asyncio.Event()
        return _new_handle(component_id, self._run(self._release, component_id, count))

    async def _run(self, release: Optional[asyncio.Event], component_id: str, count: int) -> JobOutcome:
        if release is not None:
            await release.wait()
        elif self.delay:
            await asyncio.sleep(self.delay)
        outcome = self._result.pop("override", self.outcome)
        if outcome.success and self.iterations_dir is not None:
            self.write_iterations(component_id, count)
        return outcome

    def write_iterations(self, component_id: str, count: int) -> list[str]:
        """write stub files using the next free iteration numbers."""
        name = component_name_from_id(component_id)
        self.iterations_dir.mkdir(parents=True, exist_ok=True)
        taken = {p.name for p in self.iterations_dir.glob(f"{name}.iteration-*.tsx")}
        written: list[str] = []
        n = 1
        while len(written) < count:
            filename = f"{name}.iteration-{n}.tsx"
            if filename not in taken:
                (self.iterations_dir / filename).write_text(
                    f"/**\n * @mode vibe\n * @description mock iteration {n}\n */\nexport default function {name}() {{ return null }}\n"
                )
                written.append(filename)
            n += 1
        return written

    def release(self, outcome: Optional[JobOutcome] = None) -> None:
        """let held jobs finish, optionally with a different outcome."""
        if outcome is not None:
            self._result["override"] = outcome
        if self._release is not None:
            self._release.set()

    async def cancel(self, handle: JobHandle) -> None:
        self.cancelled.append(handle.id)
        self.release(JobOutcome(success=False, error="generation cancelled"))

    async def list_models(self) -> tuple[list[ModelOption], str]:
        return [AUTO_MODEL, ModelOption(value="mock", label="Mock")], "mock"


class SubprocessJobRunner:
    """runs an agent cli, feeding the prompt on stdin."""

    def __init__(
        self,
        command: tuple[str, ...] = ("cursor", "agent", "--print", "--force"),
        cwd: Optional[Path] = None,
        temp_dir: Optional[Path] = None,
        models_command: tuple[str, ...] = ("cursor", "agent", "models"),
        models_ttl: float = MODELS_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.command = tuple(command)
        self.cwd = cwd or Path.cwd()
        self.temp_dir = temp_dir or (self.cwd / ".playground-temp")
        self.lockfile = self.temp_dir / GENERATION_LOCKFILE_FILENAME
        self.models_command = tuple(models_command)
        self.models_ttl = models_ttl
        self._clock = clock
        self._models: Optional[list[ModelOption]] = None
        self._models_at = 0.0
        self.cleanup_orphaned_process()

    # --- lockfile ---

    def _write_lockfile(self, pid: int, component_id: str) -> None:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        data = {"pid": pid, "component_id": component_id, "start_time": int(time.time() * 1000)}
        self.lockfile.write_text(json.dumps(data))

    def _remove_lockfile(self) -> None:
        try:
            self.lockfile.unlink()
        except FileNotFoundError:
            pass

    def cleanup_orphaned_process(self) -> bool:
        """kill a generation left running by a previous server. returns True if one was killed."""
        if not self.lockfile.exists():
            return False
        try:
            data = json.loads(self.lockfile.read_text())
            pid = int(data["pid"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("unreadable generation lockfile %s: %s", self.lockfile, e)
            self._remove_lockfile()
            return False

        killed = False
        try:
            os.kill(pid, 0)
        except (ProcessLookupError, PermissionError):
            pass
        else:
            logger.warning("killing orphaned generation process pid=%s (component: %s)", pid, data.get("component_id"))
            try:
                os.kill(pid, signal.SIGTERM)
                killed = True
            except ProcessLookupError:
                pass
        self._remove_lockfile()
        return killed

    # --- running ---

    def _argv(self, model: Optional[str]) -> list[str]:
        argv = list(self.command)
        if model:
            argv += ["--model", model]
        return argv

    def _log_header(self, prompt: str, component_id: str, model: Optional[str]) -> str:
        lines = [
            f"=== Generation started at {datetime.now().isoformat()} ===",
            f"Component: {component_id}",
        ]
        if model:
            lines.append(f"Model: {model}")
        lines += ["", "=== Prompt ===", prompt, "", "=== Agent Output ===", ""]
        return "\n".join(lines)

    async def start(
        self,
        prompt: str,
        count: int,
        component_id: str = "component",
        model: Optional[str] = None,
    ) -> JobHandle:
        safe_id = sanitize_component_id(component_id)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.temp_dir / f"chat-{safe_id}-{int(time.time() * 1000)}.txt"
        log_path.write_text(self._log_header(prompt, safe_id, model))

        try:
            process = await asyncio.create_subprocess_exec(
                *self._argv(model),
                cwd=str(self.cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            message = (
                f"{self.command[0]} not found. make sure it is installed and on your PATH."
            )
            self._append_log(log_path, f"\n=== Error: {message} ===\n")
            return _new_handle(component_id, _failed(message), log_path=log_path)
        except OSError as e:
            self._append_log(log_path, f"\n=== Error: {e} ===\n")
            return _new_handle(component_id, _failed(str(e)), log_path=log_path)

        if process.pid:
            self._write_lockfile(process.pid, safe_id)
        logger.info("started generation pid=%s for %s (%d iterations)", process.pid, safe_id, count)

        handle = _new_handle(
            component_id,
            self._supervise(process, prompt, log_path),
            log_path=log_path,
            _process=process,
        )
        return handle

    async def _supervise(self, process: asyncio.subprocess.Process, prompt: str, log_path: Path) -> JobOutcome:
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        async def pump(stream: Optional[asyncio.StreamReader], sink: list[str], prefix: str) -> None:
            if stream is None:
                return
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                text = chunk.decode(errors="replace")
                sink.append(text)
                self._append_log(log_path, prefix + text)

        try:
            if process.stdin is not None:
                process.stdin.write(prompt.encode())
                await process.stdin.drain()
                process.stdin.close()
            await asyncio.gather(
                pump(process.stdout, stdout_parts, ""),
                pump(process.stderr, stderr_parts, "[STDERR] "),
            )
            code = await process.wait()
        except (BrokenPipeError, ConnectionResetError) as e:
            code = await process.wait()
            stderr_parts.append(str(e))
        finally:
            self._remove_lockfile()

        self._append_log(log_path, f"\n=== Generation ended with code {code} at {datetime.now().isoformat()} ===\n")
        if code == 0:
            return JobOutcome(success=True, output="".join(stdout_parts), exit_code=0)
        stderr = "".join(stderr_parts).strip()
        return JobOutcome(
            success=False,
            output="".join(stdout_parts),
            error=stderr or f"agent exited with code {code}",
            exit_code=code,
        )

    @staticmethod
    def _append_log(log_path: Path, text: str) -> None:
        try:
            with open(log_path, "a") as f:
                f.write(text)
        except OSError as e:
            logger.warning("could not write generation log %s: %s", log_path, e)

    async def cancel(self, handle: JobHandle) -> None:
        """ask the agent to stop; kill it if it is still alive after a grace period."""
        process = handle._process
        if process is None or process.returncode is not None:
            return
        logger.info("cancelling generation pid=%s", process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(asyncio.shield(process.wait()), KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    # --- models ---

    async def list_models(self) -> tuple[list[ModelOption], str]:
        """models the agent cli offers, as (models, source).

        source is "cache" while a previous listing is younger than models_ttl,
        otherwise "cli". raises ModelListError when the cli can't be queried.
        """
        if self._models is not None and self._clock() - self._models_at < self.models_ttl:
            return self._models, "cache"
        models = await self._fetch_models()
        self._models = models
        self._models_at = self._clock()
        return models, "cli"

    async def _fetch_models(self) -> list[ModelOption]:
        command = " ".join(self.models_command)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.models_command,
                cwd=str(self.cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ModelListError(f"{self.models_command[0]} not found. make sure it is on your PATH.") from e
        except OSError as e:
            raise ModelListError(f"{command} failed: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), MODELS_COMMAND_TIMEOUT)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ModelListError(f"{command} timed out") from e

        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip() or f"exit code {process.returncode}"
            raise ModelListError(f"{command} failed: {detail}")
        models = parse_models_output(stdout.decode(errors="replace"))
        if len(models) <= 1:
            raise ModelListError(f"no models found in {command} output")
        logger.info("listed %d models from %s", len(models) - 1, command)
        return models


class ClaudeJobRunner:
    """runs the iteration prompt through claude-agent-sdk.

    the agent gets file tools rooted at the project directory so it can
    write iteration files itself.
    """

    def __init__(self, cwd: Optional[Path] = None, model: Optional[str] = None):
        self.cwd = cwd or Path.cwd()
        self.model = model

    async def start(
        self,
        prompt: str,
        count: int,
        component_id: str = "component",
        model: Optional[str] = None,
    ) -> JobHandle:
        return _new_handle(component_id, self._run(prompt, model or self.model))

    async def _run(self, prompt: str, model: Optional[str]) -> JobOutcome:
        opts = {
            "cwd": str(self.cwd),
            "allowed_tools": ["Read", "Write", "Edit", "Glob", "Grep"],
            "permission_mode": "acceptEdits",
        }
        if model:
            opts["model"] = model
        client: Optional[ClaudeSDKClient] = None
        text_parts: list[str] = []

        try:
            client = ClaudeSDKClient(ClaudeAgentOptions(**opts))
            await client.connect()
            await client.query(prompt)
            async for event in client.receive_response():
                if hasattr(event, "message") and hasattr(event.message, "content"):
                    for block in event.message.content:
                        if hasattr(block, "text"):
                            text_parts.append(block.text)
                elif hasattr(event, "content") and isinstance(event.content, list):
                    for block in event.content:
                        if hasattr(block, "text"):
                            text_parts.append(block.text)
                if getattr(event, "is_error", False):
                    return JobOutcome(success=False, output="\n".join(text_parts), error=str(getattr(event, "result", "agent error")))
            return JobOutcome(success=True, output="\n".join(text_parts))
        except asyncio.CancelledError:
            return JobOutcome(success=False, output="\n".join(text_parts), error="generation cancelled")
        except Exception as e:
            logger.exception("claude generation failed")
            return JobOutcome(success=False, output="\n".join(text_parts), error=f"claude api error: {e}")
        finally:
            if client:
                try:
                    await client.disconnect()
                except Exception:
                    logger.debug("ignoring disconnect error", exc_info=True)

    async def cancel(self, handle: JobHandle) -> None:
        if handle._task is not None and not handle._task.done():
            handle._task.cancel()


async def _failed(message: str) -> JobOutcome:
    return JobOutcome(success=False, error=message)
