"""Terminal output helpers for the brewops CLI."""

import re
import sys

# CSI sequences (colours, cursor movement, line clearing) and OSC sequences (titles, links)
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from ``text``."""
    return _ANSI_ESCAPE.sub("", text)


def display_width(text: str) -> int:
    return len(strip_ansi(text))


# Terminal colors for better output
class Colors:
    BOLD = "\033[1m"
    RESET = "\033[0m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    RED = "\033[31m"
    ORANGE = "\033[38;5;208m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    DIM = "\033[2m"

    @classmethod
    def disable(cls):
        """Turn every colour into an empty string (for --no-color or pipes)."""
        for name in ("BOLD", "RESET", "GREEN", "YELLOW", "RED", "ORANGE", "BLUE", "CYAN", "DIM"):
            setattr(cls, name, "")


class StatusIcons:
    """Status icons for consistent visual feedback across the application"""
    SUCCESS = "✓"
    FAILED = "✗"
    CANCELLED = "⏹"
    WARNING = "⚠"
    PROCESSING = "⟳"
    ARROW = "→"


def format_table(headers, rows) -> str:
    """Format rows as a light box-drawn table. Cells may contain colour codes."""
    if not headers or not rows:
        return ""

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row[:len(widths)]):
            widths[i] = max(widths[i], display_width(str(cell)))

    def render(cells):
        padded = []
        for i, cell in enumerate(cells[:len(widths)]):
            cell = str(cell)
            padded.append(f" {cell}{' ' * (widths[i] - display_width(cell))} ")
        return "│" + "│".join(padded) + "│"

    rule = [("─" * (w + 2)) for w in widths]
    lines = ["┌" + "┬".join(rule) + "┐", render([f"{Colors.BOLD}{h}{Colors.RESET}" for h in headers]),
             "├" + "┼".join(rule) + "┤"]
    lines.extend(render(row) for row in rows)
    lines.append("└" + "┴".join(rule) + "┘")
    return "\n".join(lines)


class LogPrinter:
    """Prints operation output as it streams in."""

    def __init__(self, stream=None, keep_colors: bool = True):
        self.stream = stream or sys.stdout
        self.keep_colors = keep_colors
        self.count = 0

    def line(self, line):
        text = str(line)
        if not self.keep_colors:
            text = strip_ansi(text)
        self.stream.write(f"{Colors.DIM}│{Colors.RESET} {text}\n")
        self.stream.flush()
        self.count += 1

    def header(self, message: str):
        self.stream.write(f"{Colors.BOLD}[*] {message}{Colors.RESET}\n")
        self.stream.flush()

    def result(self, icon: str, color: str, message: str):
        self.stream.write(f"{color}[{icon}]{Colors.RESET} {message}\n")
        self.stream.flush()
