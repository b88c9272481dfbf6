"""Limine bootloader acquisition, staging and installation."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Sequence
import shutil

from .command_runner import CommandError, CommandRunner
from .console import Console
from .errors import BuildError, BuildStep


LIMINE_UTILITY = "limine"

# artifact -> directory under the ISO root it is staged into
LIMINE_STAGING: Dict[str, str] = {
    "limine-bios.sys": "boot/limine",
    "limine-bios-cd.bin": "boot/limine",
    "limine-uefi-cd.bin": "boot/limine",
    "BOOTX64.EFI": "EFI/BOOT",
    "BOOTIA32.EFI": "EFI/BOOT",
}

REQUIRED_FILES: tuple[str, ...] = (*LIMINE_STAGING, LIMINE_UTILITY)


class LimineManager:
    """Keeps a checkout of the Limine binary release under ``limine_path``.

    The checkout is reused as long as every file in :data:`REQUIRED_FILES` is
    present; any missing file makes the whole directory stale.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        limine_path: Path,
        repository: str,
        branch: str,
        console: Console | None = None,
    ) -> None:
        self._runner = runner
        self._limine_path = limine_path
        self._repository = repository
        self._branch = branch
        self._console = console or Console("none")

    @property
    def limine_path(self) -> Path:
        return self._limine_path

    @property
    def utility(self) -> Path:
        return self._limine_path / LIMINE_UTILITY

    def missing_files(self) -> List[str]:
        if not self._limine_path.is_dir():
            return list(REQUIRED_FILES)
        return [name for name in REQUIRED_FILES if not (self._limine_path / name).is_file()]

    def is_complete(self) -> bool:
        return not self.missing_files()

    def ensure(self) -> bool:
        """Make sure the checkout is complete; return ``True`` if it was (re)acquired."""

        missing = self.missing_files()
        if not missing:
            self._console.debug(f"Limine files already present in {self._limine_path}")
            return False

        if self._limine_path.exists():
            self._console.info(
                f"Limine checkout at {self._limine_path} is missing {', '.join(missing)}; re-acquiring"
            )
            self._purge()

        self._clone()
        self._build()
        return True

    def _purge(self) -> None:
        try:
            if self._limine_path.is_dir() and not self._limine_path.is_symlink():
                shutil.rmtree(self._limine_path)
            else:
                self._limine_path.unlink()
        except OSError as exc:
            raise BuildError(BuildStep.CREATE_DIRECTORY, f"cannot remove {self._limine_path}: {exc}") from exc

    def _clone(self) -> None:
        try:
            self._limine_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BuildError(BuildStep.CREATE_DIRECTORY, f"{self._limine_path.parent}: {exc}") from exc
        self._run(
            [
                "git",
                "clone",
                self._repository,
                f"--branch={self._branch}",
                "--depth=1",
                str(self._limine_path),
            ],
            step=BuildStep.CLONE_BOOTLOADER,
        )

    def _build(self) -> None:
        self._run(["make", "-C", str(self._limine_path)], step=BuildStep.BUILD_BOOTLOADER)

    def stage(self, iso_root: Path) -> None:
        """Copy the boot-sector and EFI images into the ISO root."""

        for name, subdir in LIMINE_STAGING.items():
            source = self._limine_path / name
            destination_dir = iso_root / subdir
            try:
                destination_dir.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source, destination_dir / name)
            except OSError as exc:
                raise BuildError(BuildStep.COPY_BINARY, f"{source}: {exc}") from exc

    def install(self, image_path: Path) -> None:
        """Make ``image_path`` bootable through the legacy BIOS path."""

        self._run([str(self.utility), "bios-install", str(image_path)], step=BuildStep.INSTALL_BOOTLOADER)

    def _run(self, command: Sequence[str], *, step: BuildStep) -> None:
        self._console.debug(f"Running: {self._runner.format_command(command)}")
        try:
            self._runner.run(command)
        except (CommandError, OSError) as exc:
            raise BuildError(step, str(exc)) from exc


__all__ = ["LIMINE_STAGING", "LIMINE_UTILITY", "LimineManager", "REQUIRED_FILES"]
