"""Bootable image assembly pipeline."""
from __future__ import annotations

from pathlib import Path
from typing import List, Sequence
import shutil

from .bootloader import LimineManager
from .command_runner import CommandError, CommandRunner
from .config import FilesystemConfig, LimageConfig
from .console import Console
from .errors import BuildError, BuildStep


_FAT_BITS = {"FAT12": "12", "FAT16": "16", "FAT32": "32"}


def fat_bits(kind: str) -> str | None:
    """Return the ``mkfs.fat -F`` value for a FAT kind, ``None`` for non-FAT kinds."""

    normalized = kind.strip().upper()
    if not normalized.startswith("FAT"):
        return None
    return _FAT_BITS.get(normalized, "32")


def is_supported_filesystem(kind: str) -> bool:
    return fat_bits(kind) is not None or kind.strip().upper() == "EXT4"


class ImageBuilder:
    """Turns a kernel binary into a bootable Limine ISO at ``build.image_path``.

    Steps run strictly in order and the first failure aborts the build with a
    :class:`BuildError` naming the step. Nothing is rolled back, so a failed
    build may leave partially populated working directories behind.
    """

    def __init__(
        self,
        config: LimageConfig,
        *,
        command_runner: CommandRunner,
        console: Console | None = None,
    ) -> None:
        self._config = config
        self._build = config.build
        self._runner = command_runner
        self._console = console or Console("none")
        self._limine = LimineManager(
            command_runner,
            limine_path=self._build.limine_path,
            repository=self._build.limine_repository,
            branch=self._build.limine_branch,
            console=self._console,
        )

    @property
    def limine(self) -> LimineManager:
        return self._limine

    def build(self, kernel_path: Path | None = None) -> Path:
        """Run the whole pipeline and return the image path."""

        self.run_prebuilder()
        self.prepare_firmware()
        self._step("Preparing Limine bootloader files")
        self._limine.ensure()
        self.stage_limine_config()
        self._limine.stage(self._build.iso_root)
        self.stage_kernel(kernel_path)
        self.create_iso()
        self._step("Installing Limine to the ISO")
        self._limine.install(self._build.image_path)
        if self._build.filesystem is not None:
            self.build_filesystem(self._build.filesystem)
        self._console.info(f"Image ready: {self._build.image_path}")
        return self._build.image_path

    def run_prebuilder(self) -> None:
        command = self._build.prebuilder
        if not command:
            return
        self._step(f"Running prebuilder: {command}")
        try:
            result = self._runner.run(["sh", "-c", command], cwd=self._config.root, check=False, stream=True)
        except OSError as exc:
            self._console.warning(f"Prebuilder could not be started: {exc}")
            return
        if result.returncode != 0:
            self._console.warning(f"Prebuilder exited with status {result.returncode}; continuing")

    def prepare_firmware(self) -> None:
        self._step("Preparing OVMF firmware files")
        ovmf_path = self._build.ovmf_path
        self._mkdir(ovmf_path)
        for kind in ("code", "vars"):
            filename = f"ovmf-{kind}-{self._build.arch}.fd"
            url = f"{self._build.ovmf_url}/{filename}"
            self._run(["curl", "-fLo", str(ovmf_path / filename), url], step=BuildStep.DOWNLOAD_FIRMWARE)

    def stage_limine_config(self) -> None:
        source = self._build.limine_config
        destination = self._build.iso_root / "boot" / "limine" / "limine.conf"
        self._copy(source, destination, step=BuildStep.COPY_CONFIG)

    def stage_kernel(self, kernel_path: Path | None = None) -> None:
        source = kernel_path or self._build.kernel_path
        self._step(f"Copying kernel binary {source} to the ISO directory")
        self._copy(source, self._build.iso_root / "boot" / "kernel" / "kernel", step=BuildStep.COPY_KERNEL)

    def create_iso(self) -> None:
        self._step("Creating the Limine ISO")
        image_path = self._build.image_path
        self._mkdir(image_path.parent)
        self._run(
            [
                "xorriso",
                "-as", "mkisofs",
                "-b", "boot/limine/limine-bios-cd.bin",
                "-no-emul-boot", "-boot-load-size", "4", "-boot-info-table",
                "--efi-boot", "boot/limine/limine-uefi-cd.bin",
                "-efi-boot-part", "--efi-boot-image", "--protective-msdos-label",
                str(self._build.iso_root),
                "-o", str(image_path),
            ],
            step=BuildStep.CREATE_ISO,
        )

    def build_filesystem(self, filesystem: FilesystemConfig) -> None:
        self._step(f"Building the {filesystem.kind} filesystem image")
        if filesystem.builder:
            self._run(["sh", "-c", filesystem.builder], step=BuildStep.PAYLOAD_BUILDER, cwd=self._config.root)

        if not is_supported_filesystem(filesystem.kind):
            raise BuildError(BuildStep.UNSUPPORTED_FILESYSTEM, filesystem.kind or "<empty>")

        self._mkdir(filesystem.image_path.parent)
        self._run(
            [
                "dd",
                "if=/dev/zero",
                f"of={filesystem.image_path}",
                "bs=1M",
                f"count={filesystem.size_mb}",
            ],
            step=BuildStep.CREATE_EMPTY_IMAGE,
        )

        bits = fat_bits(filesystem.kind)
        if bits is not None:
            self._populate_fat(filesystem, bits)
        else:
            self._populate_ext4(filesystem)

    def _populate_fat(self, filesystem: FilesystemConfig, bits: str) -> None:
        image = str(filesystem.image_path)
        self._run(["mkfs.fat", "-F", bits, image], step=BuildStep.FORMAT_IMAGE)
        if filesystem.target_dir != "/":
            self._run(["mmd", "-i", image, f"::{filesystem.target_dir}"], step=BuildStep.ADD_IMAGE_DIRECTORY)

        entries = self._source_entries(filesystem.source_dir)
        if not entries:
            self._console.debug(f"No files to copy from {filesystem.source_dir}")
            return
        target = filesystem.target_dir.rstrip("/")
        self._run(
            ["mcopy", "-s", "-i", image, *map(str, entries), f"::{target}/"],
            step=BuildStep.ADD_IMAGE_CONTENT,
        )

    def _populate_ext4(self, filesystem: FilesystemConfig) -> None:
        image = str(filesystem.image_path)
        mount_point = filesystem.mount_point
        self._run(["mkfs.ext4", "-F", image], step=BuildStep.FORMAT_IMAGE)
        self._run(["mount", "-o", "loop", image, str(mount_point)], step=BuildStep.ADD_IMAGE_DIRECTORY)
        unmount = ["umount", str(mount_point)]
        try:
            destination = mount_point / filesystem.target_dir.lstrip("/")
            self._run(["mkdir", "-p", str(destination)], step=BuildStep.ADD_IMAGE_DIRECTORY)
            self._run(
                ["cp", "-r", f"{filesystem.source_dir}/.", str(destination)],
                step=BuildStep.ADD_IMAGE_CONTENT,
            )
        except BaseException:
            try:
                self._run(unmount, step=BuildStep.ADD_IMAGE_CONTENT)
            except BuildError as exc:
                self._console.warning(f"Could not unmount {mount_point}: {exc}")
            raise
        self._run(unmount, step=BuildStep.ADD_IMAGE_CONTENT)

    def _source_entries(self, source_dir: Path) -> List[Path]:
        if not source_dir.is_dir():
            raise BuildError(BuildStep.ADD_IMAGE_CONTENT, f"source directory not found: {source_dir}")
        return sorted(source_dir.iterdir())

    def _step(self, message: str) -> None:
        self._console.info(message)

    def _mkdir(self, path: Path) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BuildError(BuildStep.CREATE_DIRECTORY, f"{path}: {exc}") from exc

    def _copy(self, source: Path, destination: Path, *, step: BuildStep) -> None:
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, destination)
        except OSError as exc:
            raise BuildError(step, f"{source} -> {destination}: {exc}") from exc

    def _run(self, command: Sequence[str], *, step: BuildStep, cwd: Path | None = None) -> None:
        self._console.debug(f"Running: {self._runner.format_command(command)}")
        try:
            self._runner.run(command, cwd=cwd)
        except (CommandError, OSError) as exc:
            raise BuildError(step, str(exc)) from exc


def clean(config: LimageConfig, console: Console | None = None) -> List[Path]:
    """Remove generated working directories and images; absent entries are skipped."""

    console = console or Console("none")
    build = config.build
    targets: List[Path] = [build.iso_root, build.ovmf_path, build.limine_path, build.image_path]
    if build.filesystem is not None:
        targets.append(build.filesystem.image_path)

    removed: List[Path] = []
    for target in targets:
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()
        except FileNotFoundError:
            continue
        console.info(f"Removed {target}")
        removed.append(target)
    return removed


__all__ = ["ImageBuilder", "clean", "fat_bits", "is_supported_filesystem"]
