"""Exception types raised while loading configuration, building and running images."""
from __future__ import annotations

from enum import Enum
from typing import Sequence
import shlex


class LimageError(RuntimeError):
    """Base class for every error surfaced to the command line."""


class ConfigError(LimageError):
    """Raised when the configuration file is unreadable or does not match the schema."""


class BuildStep(str, Enum):
    DOWNLOAD_FIRMWARE = "Failed to download OVMF firmware"
    CLONE_BOOTLOADER = "Failed to clone Limine binary repository"
    BUILD_BOOTLOADER = "Failed to build the Limine install utility"
    CREATE_DIRECTORY = "Failed to create directory"
    COPY_CONFIG = "Failed to copy limine.conf"
    COPY_BINARY = "Failed to copy limine binary file(s)"
    COPY_KERNEL = "Failed to copy kernel binary"
    CREATE_ISO = "Failed to create the Limine ISO"
    INSTALL_BOOTLOADER = "Failed to install Limine to the ISO"
    PAYLOAD_BUILDER = "Failed to run the filesystem builder"
    UNSUPPORTED_FILESYSTEM = "Unsupported filesystem kind"
    CREATE_EMPTY_IMAGE = "Failed to create empty image"
    FORMAT_IMAGE = "Failed to format filesystem image"
    ADD_IMAGE_DIRECTORY = "Failed to add directory to filesystem image"
    ADD_IMAGE_CONTENT = "Failed to add content to filesystem image"


class BuildError(LimageError):
    """Raised when a pipeline step fails; ``kind`` names the step."""

    def __init__(self, kind: BuildStep, detail: str | None = None):
        message = kind.value if not detail else f"{kind.value}: {detail}"
        super().__init__(message)
        self.kind = kind
        self.detail = detail


class RunFailure(str, Enum):
    SPAWN = "Failed to execute QEMU command"
    WAIT = "Failed to wait with timeout"
    KILL = "Failed to kill QEMU"
    WAIT_AFTER_KILL = "Failed to wait for QEMU process"
    NO_EXIT_CODE = "Failed to read QEMU exit code"


class RunError(LimageError):
    """Raised when the emulator cannot be launched or supervised."""

    def __init__(self, kind: RunFailure, command: Sequence[str] | None = None, detail: str | None = None):
        message = kind.value
        if command:
            message = f"{message} `{' '.join(shlex.quote(part) for part in command)}`"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.kind = kind
        self.command = list(command) if command else []
        self.detail = detail


__all__ = [
    "BuildError",
    "BuildStep",
    "ConfigError",
    "LimageError",
    "RunError",
    "RunFailure",
]
