"""State command implementation."""

import asyncio
import json
import logging
import sys
import time

from ..utils.ui import Colors, StatusIcons, format_table

# Set up logging for this module
logger = logging.getLogger(__name__)


def snapshot_to_dict(snapshot) -> dict:
    return {
        "installed": [p._asdict() for p in snapshot.installed_packages],
        "outdated": [p._asdict() for p in snapshot.outdated_packages],
        "services": [s._asdict() for s in snapshot.services],
        "quarantined": [a._asdict() for a in snapshot.quarantined_apps],
        "pinned": list(snapshot.pinned_packages),
        "refreshed_at": snapshot.refreshed_at,
    }


def render_snapshot(snapshot, out=None):
    """Print the snapshot as tables."""
    out = out or sys.stdout
    pinned = set(snapshot.pinned_packages)

    rows = [(p.name, p.version, "Cask" if p.is_cask else "Formula", StatusIcons.SUCCESS if p.name in pinned else "")
            for p in snapshot.installed_packages]
    print(f"\n{Colors.BOLD}Installed packages:{Colors.RESET}", file=out)
    print(format_table(["Package", "Version", "Type", "Pinned"], rows) or "  (none)", file=out)

    rows = [(p.name, p.installed_version, f"{StatusIcons.ARROW} {p.current_version}")
            for p in snapshot.outdated_packages]
    print(f"\n{Colors.BOLD}Outdated:{Colors.RESET}", file=out)
    print(format_table(["Package", "Installed", "Available"], rows) or "  (none)", file=out)

    rows = []
    for service in snapshot.services:
        color = Colors.GREEN if service.is_running else Colors.DIM
        rows.append((service.name, f"{color}{service.status}{Colors.RESET}", service.user or "-"))
    print(f"\n{Colors.BOLD}Services:{Colors.RESET}", file=out)
    print(format_table(["Service", "Status", "User"], rows) or "  (none)", file=out)

    if snapshot.quarantined_apps:
        rows = [(a.name, a.cask_name or "-", a.path) for a in snapshot.quarantined_apps]
        print(f"\n{Colors.BOLD}Quarantined apps:{Colors.RESET}", file=out)
        print(format_table(["App", "Cask", "Path"], rows), file=out)


def _print_result(result, output_format: str) -> bool:
    if not result.ok:
        print(f"{Colors.ORANGE}[{StatusIcons.WARNING}]{Colors.RESET} {result.error}", file=sys.stderr)
        return False
    if output_format == "json":
        print(json.dumps(snapshot_to_dict(result.state), indent=2))
    else:
        render_snapshot(result.state)
    return True


async def watch_state(reconciler, interval: float, on_result, iterations=None):
    """Refresh state every ``interval`` seconds until cancelled.

    Args:
        reconciler: ResultReconciler to refresh through
        interval: Seconds between the end of one refresh and the next
        on_result: Called with each ReconcileResult
        iterations: Stop after this many refreshes (None = forever)
    """
    count = 0
    while iterations is None or count < iterations:
        started = time.monotonic()
        on_result(await reconciler.refresh_all())
        count += 1
        if iterations is not None and count >= iterations:
            break
        logger.debug(f"Refresh took {time.monotonic() - started:.1f}s, next in {interval}s")
        await asyncio.sleep(interval)
    return count


def handle_state_command(args, context) -> int:
    """Handle the state subcommand"""
    context.resolver.resolve()

    if args.watch is not None:
        def on_result(result):
            if args.format == "table":
                sys.stdout.write("\033[2J\033[H")
            _print_result(result, args.format)
        try:
            asyncio.run(watch_state(context.reconciler, args.watch, on_result))
        except KeyboardInterrupt:
            print()
        return 0

    result = asyncio.run(context.reconciler.refresh_all())
    return 0 if _print_result(result, args.format) else 1
