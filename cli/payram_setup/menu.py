from __future__ import annotations

from questionary import Choice

from . import console, prompts

EXIT = "exit"

OPERATIONS = (
    ("install", "Install PayRam", "fresh installation with database, SSL and hot wallet setup"),
    ("update", "Update PayRam", "move to another image tag, keeping configuration and data"),
    ("restart", "Restart PayRam", "restart the container without updating"),
    ("status", "Show status", "version, container state and completed steps"),
    ("reset", "Reset PayRam", "remove containers, data and configuration"),
)


def run_operations_menu() -> list[str] | None:
    """Command tokens for the chosen operation, or None to exit."""
    console.rule("PayRam operations")
    choices = [Choice(title=f"{title}  ({hint})", value=command) for command, title, hint in OPERATIONS]
    choices.append(Choice(title="Exit", value=EXIT))
    selected = prompts.select_item("Select an operation", choices)
    if selected == EXIT:
        return None
    return [selected]
