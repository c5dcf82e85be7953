"""Command-line interface for brewops."""

import argparse
import logging
import sys

from .commands.run import EXIT_FAILED, OPERATION_COMMANDS, handle_run_command
from .commands.state import handle_state_command
from .config import Settings
from .context import BrewContext
from .core.errors import BrewNotFound, BrewOpsError
from .providers.homebrew import SERVICE_ACTIONS
from .utils.ui import Colors

# Set up logging for this module
logger = logging.getLogger(__name__)


def _non_negative_float(value):
    number = float(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return number


def _positive_float(value):
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than zero: {value}")
    return number


def build_parser():
    parser = argparse.ArgumentParser(
        prog="brewops",
        description="Run Homebrew operations with live output and refreshed state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  brewops install wget               # Install a formula
  brewops install --cask firefox     # Install a cask
  brewops import ~/Brewfile          # Install everything in a Brewfile
  brewops service restart postgresql@16
  brewops unquarantine /Applications/Foo.app
  brewops state --format json        # Print installed/outdated/services
  brewops state --watch 30           # Re-print state every 30 seconds

Press Ctrl-C during an operation to cancel it.
        """
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    parser.add_argument("--timeout", type=_non_negative_float, default=None,
                        help="Cancel the operation after this many seconds")
    parser.add_argument("--settle-delay", type=_non_negative_float, default=None,
                        help="Seconds to wait before re-reading service status (default: 1.0)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    for name, help_text in (("install", "Install a package"), ("uninstall", "Uninstall a package")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("package", help="Formula or cask name")
        sub.add_argument("--cask", action="store_true", help="Treat the package as a cask")

    upgrade_parser = subparsers.add_parser("upgrade", help="Upgrade outdated packages")
    upgrade_parser.add_argument("packages", nargs="*", help="Packages to upgrade (default: all)")

    import_parser = subparsers.add_parser("import", help="Install everything listed in a Brewfile")
    import_parser.add_argument("brewfile", help="Path to the Brewfile")

    service_parser = subparsers.add_parser("service", help="Control a Homebrew service")
    service_parser.add_argument("action", choices=SERVICE_ACTIONS)
    service_parser.add_argument("name", help="Service (formula) name")

    quarantine_parser = subparsers.add_parser("unquarantine", help="Remove the quarantine attribute from an app")
    quarantine_parser.add_argument("app_path", help="Path to the .app bundle")

    for name, help_text in (("pin", "Pin a formula at its current version"), ("unpin", "Unpin a formula")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("package", help="Formula name")

    state_parser = subparsers.add_parser("state", help="Show installed, outdated, services and quarantine state")
    state_parser.add_argument("--format", choices=["table", "json"], default="table",
                              help="Output format (default: table)")
    state_parser.add_argument("--watch", type=_positive_float, metavar="SECONDS", default=None,
                              help="Refresh periodically until interrupted")
    return parser


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        parser.exit(2)
    return args


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv=None):
    args = parse_arguments(argv)
    configure_logging(args.verbose)
    if args.no_color or not sys.stdout.isatty():
        Colors.disable()

    settings = Settings.from_env()
    if args.settle_delay is not None:
        settings = settings._replace(service_settle_delay=args.settle_delay)
    context = BrewContext(settings)

    try:
        if args.command == "state":
            return handle_state_command(args, context)
        if args.command in OPERATION_COMMANDS:
            return handle_run_command(args, context)
    except BrewNotFound as e:
        print(f"{Colors.YELLOW}[!] {e}{Colors.RESET}", file=sys.stderr)
        return EXIT_FAILED
    except ValueError as e:
        print(f"{Colors.YELLOW}[!] {e}{Colors.RESET}", file=sys.stderr)
        return 2
    except BrewOpsError as e:
        logger.error(str(e))
        return EXIT_FAILED
    return 2


if __name__ == "__main__":
    sys.exit(main())
