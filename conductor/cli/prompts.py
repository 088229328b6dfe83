"""Console prompt helpers backing the injected `PromptProvider` capabilities."""

from __future__ import annotations

import asyncio
import getpass
import sys
from typing import Sequence, TypeVar

T = TypeVar("T")

BOLD = "\033[1m"
DIM = "\033[2m"
GREEN = "\033[32m"
RED = "\033[31m"
YELLOW = "\033[33m"
CYAN = "\033[36m"
RESET = "\033[0m"


def status_icon(connected: bool) -> str:
    return f"{GREEN}●{RESET}" if connected else f"{RED}○{RESET}"


def print_header(title: str) -> None:
    print(f"\n{BOLD}{CYAN}{title}{RESET}")
    print(f"{DIM}{'─' * len(title)}{RESET}")


def prompt_choice(prompt: str, labels: Sequence[str]) -> int | None:
    """Display numbered options and return the chosen index (None on cancel)."""
    print(prompt)
    for i, label in enumerate(labels, 1):
        print(f"  {i}. {label}")

    while True:
        try:
            raw = input("Choice: ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            print()
            return None

        if raw in ("", "q"):
            return None
        try:
            idx = int(raw)
            if 1 <= idx <= len(labels):
                return idx - 1
        except ValueError:
            pass
        print(f"  Invalid choice. Enter 1-{len(labels)}, or q.")


def prompt_value(label: str, current: str | None = None) -> str | None:
    """Prompt for a value; an empty answer keeps `current`."""
    suffix = f" [{current}]" if current else ""
    try:
        raw = input(f"{label}{suffix} ").strip()
    except (EOFError, KeyboardInterrupt):
        print()
        return None
    return raw or current


def prompt_secret(label: str) -> str | None:
    try:
        return getpass.getpass(f"{label} ")
    except (EOFError, KeyboardInterrupt):
        print()
        return None


class ConsolePrompts:
    """`PromptProvider` over stdin/stdout. Blocking reads run in a worker thread."""

    async def request_credential(self, prompt: str) -> str | None:
        return await asyncio.to_thread(prompt_secret, prompt)

    async def request_text(self, prompt: str, default: str = "") -> str | None:
        return await asyncio.to_thread(prompt_value, prompt, default or None)

    async def request_choice(self, prompt: str, options: Sequence[T], labels: Sequence[str]) -> T | None:
        index = await asyncio.to_thread(prompt_choice, prompt, labels)
        return None if index is None else options[index]

    def notify(self, message: str) -> None:
        sys.stderr.write(f"{YELLOW}{message}{RESET}\n")
        sys.stderr.flush()
