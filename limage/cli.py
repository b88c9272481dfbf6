"""Command line interface for limage."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Iterable
import sys

from . import __version__
from .build import ImageBuilder, clean
from .command_runner import CommandRunner, SubprocessCommandRunner
from .config import ConfigProvider, FileConfigProvider, LimageConfig
from .console import Console
from .errors import LimageError
from .runner import Runner, is_test_executable


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="limage", description="Build and run Limine kernel images under QEMU")
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", type=Path, default=None, help="Path to a configuration file (default: limage.toml)")
    parser.add_argument("--root", type=Path, default=None, help="Project root relative paths are resolved against")
    parser.add_argument(
        "--log-level",
        choices=list(Console.LEVELS),
        default="info",
        help="Console verbosity",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("build", help="Assemble the bootable image")

    run_parser = subparsers.add_parser("run", help="Build the image and run it in QEMU")
    run_parser.add_argument("kernel", nargs="?", type=Path, help="Kernel binary; test binaries run in test mode")
    run_parser.add_argument("mode", nargs="?", help="Named run mode from [run.modes]")

    subparsers.add_parser("clean", help="Remove generated working directories and images")

    return parser.parse_args(list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    console = Console(args.log_level)
    root = (args.root or Path.cwd()).resolve()
    provider = FileConfigProvider(root, args.config)
    try:
        return dispatch(args, provider=provider, runner=SubprocessCommandRunner(), console=console)
    except LimageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def dispatch(
    args: Namespace,
    *,
    provider: ConfigProvider,
    runner: CommandRunner,
    console: Console,
) -> int:
    config = provider.load()
    for message in config.warnings():
        console.warning(message)

    command = args.command or "build"
    if command == "build":
        return _handle_build(config, runner, console)
    if command == "run":
        return _handle_run(args, config, runner, console)
    if command == "clean":
        return _handle_clean(config, console)
    raise ValueError(f"Unknown command: {command}")


def _handle_build(config: LimageConfig, runner: CommandRunner, console: Console) -> int:
    ImageBuilder(config, command_runner=runner, console=console).build()
    return 0


def _handle_run(args: Namespace, config: LimageConfig, runner: CommandRunner, console: Console) -> int:
    kernel: Path | None = args.kernel
    if kernel is not None:
        kernel = kernel.expanduser().resolve()
    is_test = kernel is not None and is_test_executable(kernel)

    ImageBuilder(config, command_runner=runner, console=console).build(kernel)
    return Runner(config, command_runner=runner, console=console).run(is_test=is_test, mode=args.mode)


def _handle_clean(config: LimageConfig, console: Console) -> int:
    removed = clean(config, console)
    if not removed:
        console.info("Nothing to clean")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
