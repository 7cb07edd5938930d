from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from common.outcome import ErrorKind, Outcome
from common.protocol import Action, normalize_action

MAX_READ_SIZE = 5 * 1024 * 1024
MAX_OUTPUT_SIZE = 5 * 1024 * 1024
DEFAULT_RUN_TIMEOUT = 120.0
_READ_CHUNK = 64 * 1024


def is_within(root: Path, target: Path) -> bool:
    root_parts = root.parts
    return target.parts[: len(root_parts)] == root_parts


class _CappedBuffer:
    def __init__(self, limit: int):
        self.limit = limit
        self.buf = bytearray()
        self.overflowed = False

    def feed(self, chunk: bytes) -> None:
        room = self.limit - len(self.buf)
        if len(chunk) > room:
            self.buf.extend(chunk[: max(0, room)])
            self.overflowed = True
        else:
            self.buf.extend(chunk)

    def text(self) -> str:
        return self.buf.decode("utf-8", errors="replace")


class SandboxedExecutor:
    """Runs file and process actions confined to one workspace root.

    Every action returns an :class:`Outcome`; failures inside an action
    never propagate to the caller.
    """

    def __init__(
        self,
        root: str | Path,
        run_timeout: float = DEFAULT_RUN_TIMEOUT,
        max_output: int = MAX_OUTPUT_SIZE,
        max_read: int = MAX_READ_SIZE,
    ):
        self.logger = logging.getLogger("agent.executor")
        self.root = Path(os.path.realpath(root))
        self.run_timeout = float(run_timeout)
        self.max_output = int(max_output)
        self.max_read = int(max_read)
        self._handlers: dict[Action, Callable[[Mapping[str, Any]], Awaitable[Outcome]]] = {
            Action.READ: self._read,
            Action.WRITE: self._write,
            Action.LIST: self._list,
            Action.RUN: self._run,
        }

    def resolve(self, raw: str) -> Path | None:
        """Map a caller path onto the sandbox, or None if it escapes the root."""
        candidate = Path(raw)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        lexical = Path(os.path.normpath(candidate))
        if not is_within(self.root, lexical):
            return None
        canonical = Path(os.path.realpath(lexical))
        if not is_within(self.root, canonical):
            return None
        return canonical

    async def execute(self, message: Mapping[str, Any]) -> Outcome:
        raw_action = message.get("action")
        action = normalize_action(raw_action)
        if action is None:
            return Outcome.fail(ErrorKind.UNKNOWN_ACTION, f"unknown action: {raw_action!r}")
        try:
            return await self._handlers[action](message)
        except Exception as exc:
            self.logger.warning("action %s failed: %s", action.value, exc)
            return Outcome.fail(ErrorKind.IO_ERROR, f"{type(exc).__name__}: {exc}")

    def _target(self, message: Mapping[str, Any], default: str | None = None) -> Path | Outcome:
        raw = message.get("path", default)
        if not isinstance(raw, str) or not raw:
            return Outcome.fail(ErrorKind.INVALID_REQUEST, "missing path")
        target = self.resolve(raw)
        if target is None:
            return Outcome.fail(ErrorKind.PATH_ESCAPE, f"path escapes workspace root: {raw}")
        return target

    async def _read(self, message: Mapping[str, Any]) -> Outcome:
        target = self._target(message)
        if isinstance(target, Outcome):
            return target
        return await asyncio.to_thread(self._read_sync, target)

    def _read_sync(self, target: Path) -> Outcome:
        if not target.exists():
            return Outcome.fail(ErrorKind.NOT_FOUND, f"file not found: {target}")
        if not target.is_file():
            return Outcome.fail(ErrorKind.NOT_FOUND, f"not a file: {target}")
        size = target.stat().st_size
        if size > self.max_read:
            return Outcome.fail(ErrorKind.TOO_LARGE, f"file too large ({size} bytes > {self.max_read})")
        raw = target.read_bytes()
        return Outcome.ok(content=raw.decode("utf-8", errors="replace"), size=len(raw))

    async def _write(self, message: Mapping[str, Any]) -> Outcome:
        target = self._target(message)
        if isinstance(target, Outcome):
            return target
        content = message.get("content")
        if not isinstance(content, str):
            return Outcome.fail(ErrorKind.INVALID_REQUEST, "content must be a string")
        return await asyncio.to_thread(self._write_sync, target, content)

    def _write_sync(self, target: Path, content: str) -> Outcome:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content.encode("utf-8"))
        return Outcome.ok()

    async def _list(self, message: Mapping[str, Any]) -> Outcome:
        target = self._target(message, default=".")
        if isinstance(target, Outcome):
            return target
        return await asyncio.to_thread(self._list_sync, target)

    def _list_sync(self, target: Path) -> Outcome:
        if not target.exists():
            return Outcome.fail(ErrorKind.NOT_FOUND, f"directory not found: {target}")
        if not target.is_dir():
            return Outcome.fail(ErrorKind.NOT_FOUND, f"not a directory: {target}")
        entries: list[dict[str, Any]] = []
        with os.scandir(target) as it:
            for entry in sorted(it, key=lambda e: e.name):
                if entry.is_dir():
                    entries.append({"name": entry.name, "type": "dir"})
                    continue
                item: dict[str, Any] = {"name": entry.name, "type": "file"}
                # Dangling symlinks have no size.
                with contextlib.suppress(OSError):
                    item["size"] = entry.stat().st_size
                entries.append(item)
        return Outcome.ok(entries=entries)

    async def _run(self, message: Mapping[str, Any]) -> Outcome:
        command = message.get("command")
        if not isinstance(command, str) or not command.strip():
            return Outcome.fail(ErrorKind.INVALID_REQUEST, "missing command")
        # cwd is deliberately not passed through resolve().
        cwd = str(message.get("cwd") or self.root)
        timeout = self.run_timeout
        raw_timeout = message.get("timeout")
        if raw_timeout:
            try:
                timeout = float(raw_timeout) / 1000.0
            except (TypeError, ValueError):
                return Outcome.fail(ErrorKind.INVALID_REQUEST, f"invalid timeout: {raw_timeout!r}")

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=sys.platform != "win32",
            )
        except OSError as exc:
            return Outcome.fail(ErrorKind.EXECUTION_FAILURE, f"failed to start command: {exc}")

        stdout = _CappedBuffer(self.max_output)
        stderr = _CappedBuffer(self.max_output)

        async def _pump(stream: asyncio.StreamReader | None, buf: _CappedBuffer) -> None:
            if stream is None:
                return
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    return
                buf.feed(chunk)
                if buf.overflowed:
                    _kill(proc)
                    return

        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(_pump(proc.stdout, stdout), _pump(proc.stderr, stderr), proc.wait()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
            _kill(proc)
        finally:
            if proc.returncode is None:
                _kill(proc)
                with contextlib.suppress(ProcessLookupError):
                    await proc.wait()

        partial = {"output": stdout.text(), "stderr": stderr.text()}
        if timed_out:
            return Outcome.fail(ErrorKind.EXECUTION_FAILURE, f"command timed out after {timeout:g}s", **partial)
        if stdout.overflowed or stderr.overflowed:
            return Outcome.fail(
                ErrorKind.EXECUTION_FAILURE,
                f"command output exceeded {self.max_output} bytes",
                **partial,
            )
        if proc.returncode != 0:
            return Outcome.fail(
                ErrorKind.EXECUTION_FAILURE,
                f"command exited with code {proc.returncode}",
                exitCode=proc.returncode,
                **partial,
            )
        return Outcome.ok(output=stdout.text())


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError, PermissionError):
        if sys.platform != "win32":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
