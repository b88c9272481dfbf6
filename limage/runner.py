"""QEMU launch and supervised test execution."""
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Dict, List, Sequence

from .command_runner import CommandRunner, ProcessHandle
from .config import LimageConfig
from .console import Console
from .errors import RunError, RunFailure
from .template import render_arguments


SIGNAL_EXIT_CODE = 1


class TestResult(str, Enum):
    __test__ = False

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


TEST_EXIT_CODES: Dict[TestResult, int] = {
    TestResult.SUCCESS: 0,
    TestResult.FAILURE: 1,
    TestResult.TIMEOUT: 2,
}


def exit_code_for(result: TestResult) -> int:
    return TEST_EXIT_CODES[result]


def is_test_executable(path: Path) -> bool:
    """Return ``True`` for test binaries produced by ``cargo test``."""

    dirname = path.parent.name
    return dirname == "deps" or dirname.startswith("rustdoctest")


def classify_exit(returncode: int, success_exit_code: int) -> TestResult:
    if returncode == success_exit_code:
        return TestResult.SUCCESS
    return TestResult.FAILURE


class Runner:
    """Builds the emulator command line and executes it live or under supervision."""

    def __init__(
        self,
        config: LimageConfig,
        *,
        command_runner: CommandRunner,
        console: Console | None = None,
    ) -> None:
        self._config = config
        self._runner = command_runner
        self._console = console or Console("none")

    def build_command(self, *, is_test: bool, mode: str | None = None) -> List[str]:
        build = self._config.build
        qemu = self._config.qemu
        command = [qemu.binary]
        command.extend(
            render_arguments(
                qemu.base_args,
                {"image": build.image_path, "ovmf": build.ovmf_path},
            )
        )
        command.extend(qemu.extra_args)

        if build.filesystem is not None:
            command.extend(["-drive", f"file={build.filesystem.image_path},format=raw"])

        if is_test:
            if self._config.test.no_reboot:
                command.append("-no-reboot")
            command.extend(self._config.test.extra_args)
        else:
            command.extend(self._config.run.extra_args)

        if mode:
            command.extend(self._config.run.mode_args(mode))
        return command

    def run(self, *, is_test: bool, mode: str | None = None) -> int:
        """Run the image and return the process exit code for the caller."""

        command = self.build_command(is_test=is_test, mode=mode)
        profile = "test" if is_test else "live"
        if mode:
            profile = f"{profile} ({mode})"
        self._console.info(f"Running kernel through QEMU with profile: {profile}")
        self._console.debug(f"Running: {self._runner.format_command(command)}")

        if not is_test:
            return self.run_live(command)

        result = self.supervise(command)
        if result is TestResult.TIMEOUT:
            self._console.error("Test execution timed out")
        else:
            self._console.info(f"Test execution finished: {result.value}")
        return exit_code_for(result)

    def run_live(self, command: Sequence[str]) -> int:
        try:
            result = self._runner.run(command, check=False, stream=True)
        except OSError as exc:
            raise RunError(RunFailure.SPAWN, command, str(exc)) from exc
        if result.returncode < 0:
            return SIGNAL_EXIT_CODE
        return result.returncode

    def supervise(self, command: Sequence[str]) -> TestResult:
        """Run ``command`` under the test timeout and classify how it ended.

        On timeout the process is killed and then waited for before
        :attr:`TestResult.TIMEOUT` is reported. The process is reaped before
        this method returns on every path.
        """

        timeout = self._config.test.timeout_secs
        try:
            handle = self._runner.spawn(command)
        except OSError as exc:
            raise RunError(RunFailure.SPAWN, command, str(exc)) from exc

        try:
            returncode = handle.wait(timeout=timeout)
        except OSError as exc:
            self._terminate(handle)
            raise RunError(RunFailure.WAIT, detail=str(exc)) from exc
        except BaseException:
            self._terminate(handle)
            raise

        if returncode is None:
            self._console.debug(f"QEMU still running after {timeout}s; killing pid {handle.pid}")
            self._terminate(handle)
            return TestResult.TIMEOUT

        if returncode < 0:
            raise RunError(RunFailure.NO_EXIT_CODE, detail=f"terminated by signal {-returncode}")
        return classify_exit(returncode, self._config.test.success_exit_code)

    def _terminate(self, handle: ProcessHandle) -> None:
        kill_error: OSError | None = None
        try:
            handle.kill()
        except OSError as exc:
            kill_error = exc
        try:
            handle.wait()
        except OSError as exc:
            raise RunError(RunFailure.WAIT_AFTER_KILL, detail=str(exc)) from exc
        if kill_error is not None:
            raise RunError(RunFailure.KILL, detail=str(kill_error)) from kill_error


__all__ = [
    "Runner",
    "SIGNAL_EXIT_CODE",
    "TEST_EXIT_CODES",
    "TestResult",
    "classify_exit",
    "exit_code_for",
    "is_test_executable",
]
