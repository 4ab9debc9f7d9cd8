"""
Minimal interactive prompts for the config commands.

EOFError and KeyboardInterrupt from input() are left to the caller.
"""

from typing import Optional, Sequence


def ask(prompt: str, default: Optional[str] = None) -> str:
    """Ask for a non-empty line of text; an empty answer selects the default."""
    suffix = f" [{default}]" if default else ""
    while True:
        answer = input(f"{prompt}{suffix}: ").strip()
        if answer:
            return answer
        if default:
            return default
        print("A value is required.")


def confirm(prompt: str) -> bool:
    while True:
        answer = input(f"{prompt} [y/n]: ").strip().lower()
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False
        print("Please answer 'y' or 'n'.")


def select(prompt: str, items: Sequence[str]) -> int:
    """
    Let the user pick one of several items.

    Returns:
        Index of the chosen item
    """
    for i, item in enumerate(items, start=1):
        print(f"  {i}) {item}")
    while True:
        answer = input(f"{prompt} [1-{len(items)}]: ").strip()
        if answer.isdigit() and 1 <= int(answer) <= len(items):
            return int(answer) - 1
        print(f"Please enter a number between 1 and {len(items)}.")
