"""CLI entry point for building a Rust project on the OpenBSD VM."""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from .cli import report_error, setup_logging
from .config import BuildSettings
from .constants import DEFAULT_BUILD_PROFILE
from .exceptions import OpenBSDBuilderError
from .remote_build import RemoteBuildOrchestrator

DESCRIPTION = """\
Syncs a local project folder to the VM, runs cargo build with the specified
profile, and copies the resulting binaries back to the host.

The binary names are detected in the profile's target directory, falling back to
the package name from Cargo.toml. Requires the VM's entry in ~/.ssh/config
(created by openbsd-vm). OPENBSD_SSH_HOST selects the host alias
(default: openbsd-builder).
"""

EPILOG = """\
examples:
  openbsd-cargo-build ~/src/myproject
  openbsd-cargo-build --profile dev ~/src/myproject
  openbsd-cargo-build --profile release-lto ~/src/myproject ./dist
  openbsd-cargo-build --stop ~/src/myproject ./dist
  openbsd-cargo-build ~/src/myproject ./dist -- -p mycrate --features foo
"""


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


@dataclass
class BuildArguments:
    project_dir: Path
    output_dir: Path | None = None
    profile: str = DEFAULT_BUILD_PROFILE
    stop: bool = False
    cargo_args: list[str] = field(default_factory=list)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="openbsd-cargo-build",
        usage="%(prog)s [--stop] [--profile <name>] <project-dir> [output-dir] [-- cargo args...]",
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--stop", action="store_true", help="Shutdown the VM after a successful build"
    )
    parser.add_argument(
        "--profile",
        default=DEFAULT_BUILD_PROFILE,
        metavar="<name>",
        help=f'Cargo build profile (default: {DEFAULT_BUILD_PROFILE}); use "dev" for debug builds',
    )
    parser.add_argument(
        "project_dir", metavar="project-dir", help="Local Rust project directory (with Cargo.toml)"
    )
    parser.add_argument(
        "output_dir",
        metavar="output-dir",
        nargs="?",
        help="Where to copy the binaries (default: <project-dir>/target/openbsd)",
    )
    return parser


def parse_arguments(argv: Sequence[str]) -> BuildArguments:
    """Parse arguments; everything after the first `--` goes to cargo unchanged."""
    argv = list(argv)
    cargo_args: list[str] = []
    if "--" in argv:
        split = argv.index("--")
        argv, cargo_args = argv[:split], argv[split + 1 :]

    args = build_parser().parse_args(argv)
    return BuildArguments(
        project_dir=Path(args.project_dir),
        output_dir=Path(args.output_dir) if args.output_dir else None,
        profile=args.profile,
        stop=args.stop,
        cargo_args=cargo_args,
    )


async def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point."""
    args = parse_arguments(sys.argv[1:] if argv is None else argv)

    try:
        settings = BuildSettings.from_environment()
        setup_logging(settings.debug_enabled)

        orchestrator = RemoteBuildOrchestrator(settings.ssh_host)
        await orchestrator.build(
            args.project_dir,
            args.output_dir,
            build_profile=args.profile,
            extra_build_args=args.cargo_args,
            stop_after=args.stop,
        )
        return 0

    except OpenBSDBuilderError as e:
        setup_logging()
        report_error(e)
        return 1
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        return 130
    except Exception as e:
        setup_logging()
        logging.error(f"Fatal error: {e}")
        return 1


def cli_main() -> None:
    """Entry point for CLI."""
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli_main()
