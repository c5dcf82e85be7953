"""Operation subcommands: install, uninstall, upgrade, import, service, unquarantine, pin, unpin."""

import asyncio
import logging
import signal

from ..core.controller import run_with_timeout
from ..core.models import OperationStatus
from ..providers.homebrew import BrewCommand, HomebrewCommands
from ..utils.ui import Colors, LogPrinter, StatusIcons

# Set up logging for this module
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

OPERATION_COMMANDS = ("install", "uninstall", "upgrade", "import", "service", "unquarantine", "pin", "unpin")


def build_request(args, commands: HomebrewCommands) -> BrewCommand:
    """Translate parsed arguments into a BrewCommand."""
    if args.command == "install":
        return commands.install(args.package, cask=args.cask)
    if args.command == "uninstall":
        return commands.uninstall(args.package, cask=args.cask)
    if args.command == "upgrade":
        return commands.upgrade(args.packages)
    if args.command == "import":
        return commands.import_brewfile(args.brewfile)
    if args.command == "service":
        return commands.service_control(args.name, args.action)
    if args.command == "unquarantine":
        return commands.remove_quarantine(args.app_path)
    if args.command == "pin":
        return commands.pin(args.package)
    if args.command == "unpin":
        return commands.unpin(args.package)
    raise ValueError(f"Not an operation command: {args.command}")


async def run_operation(context, request: BrewCommand, timeout=None, printer=None):
    """Run one operation, streaming its output, and return the finished Operation.

    Ctrl-C cancels the operation instead of killing brewops.
    """
    controller = context.controller
    printer = printer or LogPrinter()

    def on_reconciled(result):
        if not result.ok:
            printer.result(StatusIcons.WARNING, Colors.ORANGE, f"Could not refresh state: {result.error}")

    unsubscribe = controller.subscribe(on_line=printer.line, on_reconciled=on_reconciled)
    loop = asyncio.get_running_loop()
    handles_sigint = False
    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel)
        handles_sigint = True
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers not supported here; Ctrl-C will not cancel cleanly")

    printer.header(request.label)
    try:
        task = controller.start(request.kind, request.label, request.command, request.arguments)
        return await run_with_timeout(controller, task, timeout)
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)
        unsubscribe()


def report(operation, printer: LogPrinter) -> int:
    """Print the outcome and return the process exit status."""
    if operation.status is OperationStatus.SUCCEEDED:
        printer.result(StatusIcons.SUCCESS, Colors.GREEN,
                       f"{operation.label} - Complete ({operation.duration:.1f}s)")
        return EXIT_OK
    if operation.status is OperationStatus.CANCELLED:
        printer.result(StatusIcons.CANCELLED, Colors.YELLOW, f"{operation.label} - Cancelled")
        return EXIT_CANCELLED
    printer.result(StatusIcons.FAILED, Colors.RED, f"{operation.label} - {operation.error}")
    return EXIT_FAILED


def handle_run_command(args, context) -> int:
    """Handle any of the operation subcommands"""
    commands = HomebrewCommands(context.resolver.find() or "brew") if args.command == "unquarantine" \
        else context.commands()
    request = build_request(args, commands)
    printer = LogPrinter(keep_colors=not args.no_color)
    operation = asyncio.run(run_operation(context, request, timeout=args.timeout, printer=printer))
    return report(operation, printer)
