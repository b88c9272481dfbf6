from __future__ import annotations

from pathlib import Path
import sys
import tempfile
import time
import unittest

from limage.command_runner import ProcessHandle, ScriptedHandle, SubprocessCommandRunner
from limage.config import LimageConfig
from limage.errors import RunError, RunFailure
from limage.runner import (
    TEST_EXIT_CODES,
    Runner,
    TestResult,
    classify_exit,
    exit_code_for,
    is_test_executable,
)

from tests.fakes import FakeToolRunner


class _FailingWaitHandle(ProcessHandle):
    def __init__(self, *, fail_kill: bool = False, error: BaseException | None = None) -> None:
        self.events: list[str] = []
        self.error = error or OSError("interrupted")
        self.fail_kill = fail_kill
        self.pid = 4242

    def wait(self, timeout=None):
        self.events.append("wait" if timeout is None else f"wait({timeout})")
        if timeout is not None:
            raise self.error
        return -9

    def kill(self) -> None:
        self.events.append("kill")
        if self.fail_kill:
            raise ProcessLookupError("no such process")


class _UnspawnableRunner(FakeToolRunner):
    def spawn(self, command, *, cwd=None, env=None):  # type: ignore[override]
        raise FileNotFoundError(2, "No such file or directory", command[0])


class ExitClassificationTests(unittest.TestCase):
    def test_exit_code_table(self) -> None:
        self.assertEqual(
            TEST_EXIT_CODES,
            {TestResult.SUCCESS: 0, TestResult.FAILURE: 1, TestResult.TIMEOUT: 2},
        )
        self.assertEqual(exit_code_for(TestResult.TIMEOUT), 2)

    def test_classify_exit(self) -> None:
        self.assertIs(classify_exit(33, 33), TestResult.SUCCESS)
        self.assertIs(classify_exit(0, 33), TestResult.FAILURE)
        self.assertIs(classify_exit(35, 33), TestResult.FAILURE)
        self.assertIs(classify_exit(0, 0), TestResult.SUCCESS)

    def test_is_test_executable(self) -> None:
        self.assertTrue(is_test_executable(Path("/work/target/x86_64-unknown-none/debug/deps/kernel-1a2b")))
        self.assertTrue(is_test_executable(Path("/tmp/rustdoctestXYZ/rust_out")))
        self.assertFalse(is_test_executable(Path("/work/target/x86_64-unknown-none/debug/kernel")))
        self.assertFalse(is_test_executable(Path("/work/deps-old/kernel")))


class RunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name).resolve()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _runner(self, runner: FakeToolRunner, **groups) -> Runner:
        return Runner(LimageConfig.from_mapping(groups, self.root), command_runner=runner)

    def test_default_command_renders_image_and_firmware(self) -> None:
        command = self._runner(FakeToolRunner()).build_command(is_test=False)
        image = self.root / "target" / "kernel.iso"
        ovmf = self.root / "target" / "ovmf"
        self.assertEqual(
            command,
            [
                "qemu-system-x86_64",
                "-M", "q35",
                "-m", "2G",
                "-cdrom", str(image),
                "-drive", f"if=pflash,unit=0,format=raw,file={ovmf}/ovmf-code-x86_64.fd,readonly=on",
                "-drive", f"if=pflash,unit=1,format=raw,file={ovmf}/ovmf-vars-x86_64.fd",
            ],
        )

    def test_command_layers_in_order(self) -> None:
        runner = self._runner(
            FakeToolRunner(),
            build={"filesystem": "FAT32"},
            qemu={"binary": "qemu-kvm", "base_args": ["-cdrom", "{image}"], "extra_args": ["-serial", "stdio"]},
            test={"extra_args": ["-display", "none"]},
            run={"extra_args": ["-s"], "modes": {"debug": ["-S"]}},
        )
        fs_drive = ["-drive", f"file={self.root / 'target' / 'fs.img'},format=raw"]
        prefix = ["qemu-kvm", "-cdrom", str(self.root / "target" / "kernel.iso"), "-serial", "stdio", *fs_drive]

        self.assertEqual(
            runner.build_command(is_test=True),
            [*prefix, "-no-reboot", "-display", "none"],
        )
        self.assertEqual(runner.build_command(is_test=False, mode="debug"), [*prefix, "-s", "-S"])

    def test_empty_arguments_are_kept(self) -> None:
        runner = self._runner(
            FakeToolRunner(),
            qemu={"extra_args": ["-append", ""]},
            run={"extra_args": ["-s", ""]},
        )
        command = runner.build_command(is_test=False)
        self.assertEqual(command[-4:], ["-append", "", "-s", ""])

    def test_no_reboot_can_be_disabled(self) -> None:
        command = self._runner(FakeToolRunner(), test={"no_reboot": False}).build_command(is_test=True)
        self.assertNotIn("-no-reboot", command)

    def test_live_run_passes_exit_code_through(self) -> None:
        fake = FakeToolRunner(returncodes={"qemu-system-x86_64": 7})
        self.assertEqual(self._runner(fake).run(is_test=False), 7)
        self.assertTrue(fake.commands[0].stream)
        self.assertFalse(fake.commands[0].spawned)

    def test_live_run_that_cannot_start(self) -> None:
        fake = FakeToolRunner(missing={"qemu-system-x86_64"})
        with self.assertRaises(RunError) as ctx:
            self._runner(fake).run(is_test=False)
        self.assertIs(ctx.exception.kind, RunFailure.SPAWN)
        self.assertEqual(ctx.exception.command[0], "qemu-system-x86_64")

    def test_supervised_outcomes(self) -> None:
        cases = [(33, 0), (0, 1), (1, 1), (35, 1)]
        for returncode, expected in cases:
            with self.subTest(returncode=returncode):
                handle = ScriptedHandle(returncode)
                fake = FakeToolRunner(handles=[handle])
                self.assertEqual(self._runner(fake, test={"timeout_secs": 5}).run(is_test=True), expected)
                self.assertEqual(handle.events, ["wait(5)"])
                self.assertTrue(handle.reaped)
                self.assertTrue(fake.commands[0].spawned)

    def test_custom_success_code(self) -> None:
        fake = FakeToolRunner(handles=[ScriptedHandle(17)])
        runner = self._runner(fake, test={"success_exit_code": 17})
        self.assertEqual(runner.run(is_test=True), TEST_EXIT_CODES[TestResult.SUCCESS])

    def test_timeout_kills_then_reaps(self) -> None:
        handle = ScriptedHandle(None)
        fake = FakeToolRunner(handles=[handle])
        runner = self._runner(fake, test={"timeout_secs": 3})

        self.assertIs(runner.supervise(["qemu-system-x86_64"]), TestResult.TIMEOUT)
        self.assertEqual(handle.events, ["wait(3)", "kill", "wait"])
        self.assertTrue(handle.reaped)

    def test_timeout_maps_to_exit_code_two(self) -> None:
        fake = FakeToolRunner(handles=[ScriptedHandle(None)])
        self.assertEqual(self._runner(fake).run(is_test=True), 2)

    def test_signal_termination_has_no_exit_code(self) -> None:
        fake = FakeToolRunner(handles=[ScriptedHandle(-11)])
        with self.assertRaises(RunError) as ctx:
            self._runner(fake).run(is_test=True)
        self.assertIs(ctx.exception.kind, RunFailure.NO_EXIT_CODE)

    def test_spawn_failure(self) -> None:
        with self.assertRaises(RunError) as ctx:
            self._runner(_UnspawnableRunner()).run(is_test=True)
        self.assertIs(ctx.exception.kind, RunFailure.SPAWN)

    def test_wait_failure_still_reaps(self) -> None:
        handle = _FailingWaitHandle()
        with self.assertRaises(RunError) as ctx:
            self._runner(FakeToolRunner(handles=[handle])).run(is_test=True)
        self.assertIs(ctx.exception.kind, RunFailure.WAIT)
        self.assertEqual(handle.events, ["wait(300)", "kill", "wait"])

    def test_interrupted_wait_kills_and_reaps(self) -> None:
        handle = _FailingWaitHandle(error=KeyboardInterrupt())
        with self.assertRaises(KeyboardInterrupt):
            self._runner(FakeToolRunner(handles=[handle]), test={"timeout_secs": 30}).run(is_test=True)
        self.assertEqual(handle.events, ["wait(30)", "kill", "wait"])

    def test_kill_failure_waits_before_reporting(self) -> None:
        handle = _FailingWaitHandle(fail_kill=True)
        fake = FakeToolRunner(handles=[handle])
        with self.assertRaises(RunError) as ctx:
            self._runner(fake).run(is_test=True)
        self.assertIs(ctx.exception.kind, RunFailure.KILL)
        self.assertEqual(handle.events[-2:], ["kill", "wait"])


class _TrackingSubprocessRunner(SubprocessCommandRunner):
    def __init__(self) -> None:
        self.spawned: list = []

    def spawn(self, command, *, cwd=None, env=None):  # type: ignore[override]
        handle = super().spawn(command, cwd=cwd, env=env)
        self.spawned.append(handle)
        return handle


class SupervisedProcessTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name).resolve()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _runner(self, **test) -> Runner:
        config = LimageConfig.from_mapping({"test": test}, self.root)
        self.command_runner = _TrackingSubprocessRunner()
        return Runner(config, command_runner=self.command_runner)

    def test_real_process_exit_code_is_classified(self) -> None:
        runner = self._runner(timeout_secs=30)
        command = [sys.executable, "-c", "raise SystemExit(33)"]
        self.assertIs(runner.supervise(command), TestResult.SUCCESS)

    def test_hung_process_is_killed_within_the_timeout(self) -> None:
        runner = self._runner(timeout_secs=1)
        command = [sys.executable, "-c", "import time; time.sleep(60)"]

        started = time.monotonic()
        result = runner.supervise(command)
        elapsed = time.monotonic() - started

        self.assertIs(result, TestResult.TIMEOUT)
        self.assertGreaterEqual(elapsed, 1)
        self.assertLess(elapsed, 5)
        self.assertIsNotNone(self.command_runner.spawned[0].poll())


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
