"""CLI entry point for the OpenBSD VM lifecycle."""

import argparse
import asyncio
import logging
import sys
from typing import Sequence

from .config import VMConfig
from .exceptions import OpenBSDBuilderError, OperationInterrupted, PreconditionError
from .lifecycle import HELP_TEXT, Boot, Clean, Help, Install, Mode, VMLifecycleManager
from .signal_manager import SignalManager


def setup_logging(debug: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def report_error(error: OpenBSDBuilderError) -> None:
    """Log an error and, for precondition failures, how to fix it."""
    logging.error(f"Error: {error}")
    if isinstance(error, PreconditionError) and error.hint:
        for line in error.hint.splitlines():
            logging.error(line)


def parse_mode(argv: Sequence[str]) -> Mode:
    """Decide the lifecycle mode from command-line flags.

    --help wins over --clean, which wins over --boot; no flags means install.
    """
    parser = argparse.ArgumentParser(prog="openbsd-vm", add_help=False)
    parser.add_argument("--boot", action="store_true")
    parser.add_argument("--daemon", action="store_true")
    parser.add_argument("--clean", action="store_true")
    parser.add_argument("-h", "--help", action="store_true")
    args, unknown = parser.parse_known_args(list(argv))

    if unknown:
        logging.getLogger(__name__).warning(f"Ignoring unknown arguments: {' '.join(unknown)}")

    if args.help:
        return Help()
    if args.clean:
        return Clean()
    if args.boot:
        return Boot(daemonize=args.daemon)
    if args.daemon:
        logging.getLogger(__name__).warning("--daemon has no effect without --boot")
    return Install()


async def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point."""
    signal_manager = SignalManager()

    try:
        mode = parse_mode(sys.argv[1:] if argv is None else argv)
        if isinstance(mode, Help):
            print(HELP_TEXT, end="")
            return 0

        config = VMConfig.from_environment()
        setup_logging(config.debug_enabled)
        logging.debug(f"Configuration: {config!r}")

        with signal_manager:
            manager = VMLifecycleManager(config, signal_manager)
            await manager.run(mode)
        return 0

    except OperationInterrupted as e:
        logging.warning(f"{e}")
        return signal_manager.exit_status() or 130
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
