"""ANSI color helpers shared by the aitool CLI commands."""

import sys


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"


def color(text: str, *codes) -> str:
    """Apply color codes to text."""
    if not sys.stdout.isatty():
        return text
    return "".join(codes) + text + Colors.RESET


def print_header(title: str):
    """Print a section header."""
    print()
    print(color(f"◆ {title}", Colors.CYAN, Colors.BOLD))


def print_info(text: str):
    print(color(f"  {text}", Colors.DIM))


def print_success(text: str):
    print(color(f"✓ {text}", Colors.GREEN))


def print_warning(text: str):
    print(color(f"⚠ {text}", Colors.YELLOW))


def print_error(text: str):
    print(color(f"✗ {text}", Colors.RED), file=sys.stderr)


def check_mark(ok: bool) -> str:
    if ok:
        return color("✓", Colors.GREEN)
    return color("✗", Colors.RED)
