"""Build bootable Limine images for a kernel and run them under QEMU."""
from __future__ import annotations

__version__ = "0.3.0"

from .build import ImageBuilder, clean
from .cli import main
from .config import FileConfigProvider, LimageConfig
from .errors import BuildError, ConfigError, LimageError, RunError
from .runner import Runner, TestResult, exit_code_for

__all__ = [
    "BuildError",
    "ConfigError",
    "FileConfigProvider",
    "ImageBuilder",
    "LimageConfig",
    "LimageError",
    "RunError",
    "Runner",
    "TestResult",
    "clean",
    "exit_code_for",
    "main",
]
