"""Command runner doubles that imitate the external tools the pipeline invokes."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping, Sequence

from limage.bootloader import LIMINE_STAGING, LIMINE_UTILITY
from limage.command_runner import CommandError, CommandResult, ProcessHandle, RecordingCommandRunner


class FakeToolRunner(RecordingCommandRunner):
    """Records commands and produces the files the real tools would create.

    ``failing`` lists program names that exit with status 1; ``missing`` lists
    program names that cannot be started at all.
    """

    def __init__(
        self,
        *,
        failing: Iterable[str] = (),
        missing: Iterable[str] = (),
        handles: Iterable[ProcessHandle] | None = None,
        returncodes: Mapping[str, int] | None = None,
    ) -> None:
        super().__init__(handles=handles)
        self.failing = set(failing)
        self.missing = set(missing)
        self.returncodes = dict(returncodes or {})

    def run(self, command, *, cwd=None, env=None, check=True, stream=False):  # type: ignore[override]
        program = Path(command[0]).name
        if program in self.missing:
            raise FileNotFoundError(2, "No such file or directory", command[0])
        super().run(command, cwd=cwd, env=env, check=check, stream=stream)

        returncode = self.returncodes.get(program, 1 if program in self.failing else 0)
        result = CommandResult(command=list(command), returncode=returncode, stdout="", stderr="")
        if returncode != 0:
            if check:
                raise CommandError(result)
            return result

        self._simulate(list(command))
        return result

    def commands_for(self, program: str) -> list[list[str]]:
        return [record.command for record in self.commands if Path(record.command[0]).name == program]

    def _simulate(self, command: Sequence[str]) -> None:
        program = Path(command[0]).name
        if program == "git" and command[1] == "clone":
            checkout = Path(command[-1])
            checkout.mkdir(parents=True)
            for name in LIMINE_STAGING:
                (checkout / name).write_bytes(name.encode())
        elif program == "make":
            (Path(command[2]) / LIMINE_UTILITY).write_bytes(b"#!/bin/sh\n")
        elif program == "curl":
            Path(command[2]).write_bytes(b"firmware")
        elif program == "xorriso":
            Path(command[command.index("-o") + 1]).write_bytes(b"iso9660")


def make_project(root: Path, *, kernel: bytes = b"\x7fELF kernel") -> Path:
    """Create the files a kernel project provides: ``limine.conf`` and a kernel binary."""

    (root / "limine.conf").write_text("timeout: 0\n/Kernel\n    protocol: limine\n    path: boot():/boot/kernel/kernel\n")
    kernel_path = root / "target" / "x86_64-unknown-none" / "debug" / "kernel"
    kernel_path.parent.mkdir(parents=True)
    kernel_path.write_bytes(kernel)
    return kernel_path
