"""Configuration model and the provider that resolves it before a build."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

import yaml

from .config_loader import load_config_file, normalize_string_list, resolve_path
from .errors import ConfigError
from .template import TemplateError, validate_placeholders


CONFIG_FILENAME = "limage.toml"

TEMPLATE_PLACEHOLDERS = ("image", "ovmf")

DEFAULT_LIMINE_REPOSITORY = "https://github.com/limine-bootloader/limine.git"
DEFAULT_LIMINE_BRANCH = "v8.x-binary"
DEFAULT_OVMF_URL = "https://github.com/osdev0/edk2-ovmf-nightly/releases/latest/download"

DEFAULT_BASE_ARGS: tuple[str, ...] = (
    "-M", "q35",
    "-m", "2G",
    "-cdrom", "{image}",
    "-drive", "if=pflash,unit=0,format=raw,file={ovmf}/ovmf-code-x86_64.fd,readonly=on",
    "-drive", "if=pflash,unit=1,format=raw,file={ovmf}/ovmf-vars-x86_64.fd",
)


def _section(data: Mapping[str, Any], name: str, *, label: str | None = None) -> Mapping[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"[{label or name}] must be a table")
    return {str(key).replace("-", "_"): item for key, item in value.items()}


def _check_keys(section: Iterable[str], allowed: set[str], label: str) -> None:
    unexpected = sorted(set(section) - allowed)
    if unexpected:
        raise ConfigError(
            f"Unexpected key(s) in [{label}]: {', '.join(unexpected)}. Allowed: {', '.join(sorted(allowed))}"
        )


def _string(section: Mapping[str, Any], key: str, default: str, label: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label}.{key} must be a non-empty string")
    return value


def _optional_string(section: Mapping[str, Any], key: str, label: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{label}.{key} must be a string")
    return value.strip() or None


def _integer(section: Mapping[str, Any], key: str, default: int, label: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label}.{key} must be an integer")
    return value


def _boolean(section: Mapping[str, Any], key: str, default: bool, label: str) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{label}.{key} must be a boolean")
    return value


def _string_list(section: Mapping[str, Any], key: str, label: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    if key not in section:
        return default
    try:
        return tuple(normalize_string_list(section[key], field_name=f"{label}.{key}"))
    except TypeError as exc:
        raise ConfigError(str(exc)) from exc


@dataclass(frozen=True, slots=True)
class FilesystemConfig:
    """Auxiliary payload image attached to the emulator as a raw drive."""

    kind: str
    image_path: Path
    size_mb: int = 64
    source_dir: Path = Path("tests/storage")
    target_dir: str = "/test"
    builder: str | None = None
    mount_point: Path = Path("/mnt")

    _KEYS = {"kind", "image_path", "size_mb", "source_dir", "target_dir", "builder", "mount_point"}

    @classmethod
    def from_value(cls, value: Any, root: Path) -> "FilesystemConfig":
        if isinstance(value, str):
            value = {"kind": value}
        if not isinstance(value, Mapping):
            raise ConfigError("build.filesystem must be a string or a table")
        section = {str(key).replace("-", "_"): item for key, item in value.items()}
        label = "build.filesystem"
        _check_keys(section, cls._KEYS, label)
        size_mb = _integer(section, "size_mb", 64, label)
        if size_mb <= 0:
            raise ConfigError(f"{label}.size_mb must be greater than zero")
        target_dir = _string(section, "target_dir", "/test", label)
        if not target_dir.startswith("/"):
            target_dir = f"/{target_dir}"
        return cls(
            kind=_string(section, "kind", "", label).strip().upper(),
            image_path=resolve_path(root, _string(section, "image_path", "target/fs.img", label)),
            size_mb=size_mb,
            source_dir=resolve_path(root, _string(section, "source_dir", "tests/storage", label)),
            target_dir=target_dir.rstrip("/") or "/",
            builder=_optional_string(section, "builder", label),
            mount_point=resolve_path(root, _string(section, "mount_point", "/mnt", label)),
        )


@dataclass(frozen=True, slots=True)
class BuildConfig:
    image_path: Path
    ovmf_path: Path
    limine_path: Path
    iso_root: Path
    kernel_path: Path
    limine_config: Path
    prebuilder: str | None = None
    filesystem: FilesystemConfig | None = None
    limine_repository: str = DEFAULT_LIMINE_REPOSITORY
    limine_branch: str = DEFAULT_LIMINE_BRANCH
    ovmf_url: str = DEFAULT_OVMF_URL
    arch: str = "x86_64"

    _KEYS = {
        "image_path",
        "ovmf_path",
        "limine_path",
        "iso_root",
        "kernel_path",
        "limine_config",
        "prebuilder",
        "filesystem",
        "limine_repository",
        "limine_branch",
        "ovmf_url",
        "arch",
    }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], root: Path) -> "BuildConfig":
        section = _section(data, "build")
        _check_keys(section, cls._KEYS, "build")
        filesystem = None
        if section.get("filesystem") is not None:
            filesystem = FilesystemConfig.from_value(section["filesystem"], root)

        def path(key: str, default: str) -> Path:
            return resolve_path(root, _string(section, key, default, "build"))

        return cls(
            image_path=path("image_path", "target/kernel.iso"),
            ovmf_path=path("ovmf_path", "target/ovmf"),
            limine_path=path("limine_path", "target/limine"),
            iso_root=path("iso_root", "target/iso_root"),
            kernel_path=path("kernel_path", "target/x86_64-unknown-none/debug/kernel"),
            limine_config=path("limine_config", "limine.conf"),
            prebuilder=_optional_string(section, "prebuilder", "build"),
            filesystem=filesystem,
            limine_repository=_string(section, "limine_repository", DEFAULT_LIMINE_REPOSITORY, "build"),
            limine_branch=_string(section, "limine_branch", DEFAULT_LIMINE_BRANCH, "build"),
            ovmf_url=_string(section, "ovmf_url", DEFAULT_OVMF_URL, "build").rstrip("/"),
            arch=_string(section, "arch", "x86_64", "build"),
        )


@dataclass(frozen=True, slots=True)
class QemuConfig:
    binary: str = "qemu-system-x86_64"
    base_args: tuple[str, ...] = DEFAULT_BASE_ARGS
    extra_args: tuple[str, ...] = ()

    _KEYS = {"binary", "base_args", "extra_args"}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "QemuConfig":
        section = _section(data, "qemu")
        _check_keys(section, cls._KEYS, "qemu")
        base_args = _string_list(section, "base_args", "qemu", DEFAULT_BASE_ARGS)
        try:
            validate_placeholders(base_args, TEMPLATE_PLACEHOLDERS)
        except TemplateError as exc:
            raise ConfigError(f"qemu.base_args: {exc}") from exc
        return cls(
            binary=_string(section, "binary", "qemu-system-x86_64", "qemu"),
            base_args=base_args,
            extra_args=_string_list(section, "extra_args", "qemu"),
        )


@dataclass(frozen=True, slots=True)
class TestConfig:
    __test__ = False

    timeout_secs: int = 300
    success_exit_code: int = 33
    no_reboot: bool = True
    extra_args: tuple[str, ...] = ()

    _KEYS = {"timeout_secs", "success_exit_code", "no_reboot", "extra_args"}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TestConfig":
        section = _section(data, "test")
        _check_keys(section, cls._KEYS, "test")
        timeout_secs = _integer(section, "timeout_secs", 300, "test")
        if timeout_secs <= 0:
            raise ConfigError("test.timeout_secs must be greater than zero")
        success_exit_code = _integer(section, "success_exit_code", 33, "test")
        if not 0 <= success_exit_code <= 255:
            raise ConfigError("test.success_exit_code must be between 0 and 255")
        return cls(
            timeout_secs=timeout_secs,
            success_exit_code=success_exit_code,
            no_reboot=_boolean(section, "no_reboot", True, "test"),
            extra_args=_string_list(section, "extra_args", "test"),
        )


@dataclass(frozen=True, slots=True)
class RunConfig:
    extra_args: tuple[str, ...] = ()
    modes: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    _KEYS = {"extra_args", "modes"}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RunConfig":
        section = _section(data, "run")
        _check_keys(section, cls._KEYS, "run")
        modes_section = section.get("modes") or {}
        if not isinstance(modes_section, Mapping):
            raise ConfigError("[run.modes] must be a table")
        modes: Dict[str, tuple[str, ...]] = {}
        for name, value in modes_section.items():
            modes[str(name)] = _string_list({"args": value}, "args", f"run.modes.{name}")
        return cls(extra_args=_string_list(section, "extra_args", "run"), modes=modes)

    def mode_args(self, name: str) -> tuple[str, ...]:
        if name not in self.modes:
            available = ", ".join(sorted(self.modes)) or "<none>"
            raise ConfigError(f"Run mode '{name}' not found. Available modes: {available}")
        return self.modes[name]


@dataclass(frozen=True, slots=True)
class LimageConfig:
    root: Path
    build: BuildConfig
    qemu: QemuConfig = field(default_factory=QemuConfig)
    test: TestConfig = field(default_factory=TestConfig)
    run: RunConfig = field(default_factory=RunConfig)

    _GROUPS = {"build", "qemu", "test", "run"}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], root: Path) -> "LimageConfig":
        root = root.resolve()
        _check_keys((str(key) for key in data), cls._GROUPS, "<root>")
        return cls(
            root=root,
            build=BuildConfig.from_mapping(data, root),
            qemu=QemuConfig.from_mapping(data),
            test=TestConfig.from_mapping(data),
            run=RunConfig.from_mapping(data),
        )

    @classmethod
    def defaults(cls, root: Path) -> "LimageConfig":
        return cls.from_mapping({}, root)

    def warnings(self) -> List[str]:
        """Return non-fatal observations about this configuration."""

        messages: List[str] = []
        if self.test.success_exit_code == 0:
            messages.append(
                "test.success_exit_code is 0; an ordinary emulator shutdown will be reported as a passing test"
            )
        return messages


class ConfigProvider:
    """Abstract source of a resolved :class:`LimageConfig`."""

    def load(self) -> LimageConfig:
        raise NotImplementedError


class FileConfigProvider(ConfigProvider):
    """Reads ``limage.toml`` (or an explicit TOML/JSON/YAML file) under ``root``.

    A missing default file yields the all-defaults configuration; a missing
    explicitly requested file is an error.
    """

    def __init__(self, root: Path, path: Path | None = None) -> None:
        self._root = root
        self._path = path

    @property
    def path(self) -> Path:
        if self._path is None:
            return self._root / CONFIG_FILENAME
        return resolve_path(self._root, self._path)

    def load(self) -> LimageConfig:
        path = self.path
        if not path.exists():
            if self._path is not None:
                raise ConfigError(f"Configuration file not found: {path}")
            return LimageConfig.defaults(self._root)

        try:
            data = load_config_file(path)
        except (OSError, ValueError, TypeError, yaml.YAMLError) as exc:
            raise ConfigError(f"Failed to read limage configuration '{path}': {exc}") from exc
        return LimageConfig.from_mapping(data, self._root)


__all__ = [
    "BuildConfig",
    "CONFIG_FILENAME",
    "ConfigProvider",
    "DEFAULT_BASE_ARGS",
    "FileConfigProvider",
    "FilesystemConfig",
    "LimageConfig",
    "QemuConfig",
    "RunConfig",
    "TEMPLATE_PLACEHOLDERS",
    "TestConfig",
]
