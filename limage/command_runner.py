"""Utilities for executing external commands, to completion or under supervision."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence
import os
import shlex
import subprocess


@dataclass
class CommandResult:
    """Represents the outcome of an executed command."""

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    streamed: bool = False


class CommandError(RuntimeError):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, result: CommandResult):
        message = f"Command failed with exit code {result.returncode}: {' '.join(map(shlex.quote, result.command))}"
        if result.streamed:
            message = f"{message}\nstdout/stderr already streamed above."
        else:
            message = (
                f"{message}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        super().__init__(message)
        self.result = result


class ProcessHandle:
    """A spawned process that must be waited on before it is dropped."""

    pid: int | None = None

    def wait(self, timeout: float | None = None) -> int | None:
        """Block until the process exits and return its raw return code.

        With a ``timeout`` the wait is bounded: ``None`` is returned when the
        process is still running after ``timeout`` seconds. Negative return
        codes mean the process was terminated by that signal number.
        """
        raise NotImplementedError

    def kill(self) -> None:
        raise NotImplementedError


class CommandRunner:
    """Abstract command runner interface."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        stream: bool = False,
    ) -> CommandResult:
        raise NotImplementedError

    def spawn(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessHandle:
        raise NotImplementedError

    def format_command(self, command: Sequence[str]) -> str:
        return " ".join(shlex.quote(part) for part in command)


class SubprocessHandle(ProcessHandle):
    """:class:`ProcessHandle` backed by :class:`subprocess.Popen`."""

    def __init__(self, process: subprocess.Popen) -> None:
        self._process = process
        self.pid = process.pid

    def wait(self, timeout: float | None = None) -> int | None:
        try:
            return self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def kill(self) -> None:
        self._process.kill()

    def poll(self) -> int | None:
        return self._process.poll()


class SubprocessCommandRunner(CommandRunner):
    """Command runner that executes commands via :mod:`subprocess`."""

    @staticmethod
    def _merge_environment(env: Mapping[str, str] | None) -> Dict[str, str] | None:
        if env is None:
            return None
        merged = os.environ.copy()
        merged.update(env)
        return merged

    def _finalize(self, result: CommandResult, *, check: bool) -> CommandResult:
        if check and result.returncode != 0:
            raise CommandError(result)
        return result

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        stream: bool = False,
    ) -> CommandResult:
        merged_env = self._merge_environment(env)
        if not stream:
            process = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                env=merged_env,
                capture_output=True,
                text=True,
                check=False,
            )
            return self._finalize(
                CommandResult(
                    command=command,
                    returncode=process.returncode,
                    stdout=process.stdout,
                    stderr=process.stderr,
                ),
                check=check,
            )

        process = subprocess.run(
            command,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
            check=False,
        )

        return self._finalize(
            CommandResult(
                command=command,
                returncode=process.returncode,
                stdout="",
                stderr="",
                streamed=True,
            ),
            check=check,
        )

    def spawn(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> SubprocessHandle:
        process = subprocess.Popen(
            list(command),
            cwd=str(cwd) if cwd else None,
            env=self._merge_environment(env),
        )
        return SubprocessHandle(process)


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None
    env: Dict[str, str]
    stream: bool
    spawned: bool = False


class ScriptedHandle(ProcessHandle):
    """Process handle that replays a predetermined exit status.

    ``returncode=None`` models a process that never exits on its own: bounded
    waits time out until :meth:`kill` is called, after which the handle
    reports ``-9``.
    """

    def __init__(self, returncode: int | None = 0) -> None:
        self.returncode = returncode
        self.events: List[str] = []
        self.killed = False
        self.reaped = False

    def wait(self, timeout: float | None = None) -> int | None:
        self.events.append("wait" if timeout is None else f"wait({timeout})")
        if self.killed:
            self.reaped = True
            return -9
        if self.returncode is None:
            if timeout is None:
                raise RuntimeError("blocking wait on a process that never exits")
            return None
        self.reaped = True
        return self.returncode

    def kill(self) -> None:
        self.events.append("kill")
        self.killed = True


class RecordingCommandRunner(CommandRunner):
    """Command runner that records commands instead of executing them."""

    def __init__(self, *, handles: Iterable[ProcessHandle] | None = None) -> None:
        self.commands: List[RecordedCommand] = []
        self.handles: List[ProcessHandle] = list(handles or [])
        self.spawned: List[ProcessHandle] = []

    @staticmethod
    def _record_entry(
        *,
        command: Sequence[str],
        cwd: Path | None,
        env: Mapping[str, str] | None,
        stream: bool,
        spawned: bool = False,
    ) -> RecordedCommand:
        return RecordedCommand(
            command=list(command),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env else {},
            stream=stream,
            spawned=spawned,
        )

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        stream: bool = False,
    ) -> CommandResult:
        self.commands.append(
            self._record_entry(command=command, cwd=cwd, env=env, stream=stream)
        )
        return CommandResult(command=command, returncode=0, stdout="", stderr="")

    def spawn(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessHandle:
        self.commands.append(
            self._record_entry(command=command, cwd=cwd, env=env, stream=True, spawned=True)
        )
        handle = self.handles.pop(0) if self.handles else ScriptedHandle(0)
        self.spawned.append(handle)
        return handle

    def programs(self) -> List[str]:
        """Return the program name of every recorded command, in order."""
        return [Path(record.command[0]).name for record in self.commands if record.command]
