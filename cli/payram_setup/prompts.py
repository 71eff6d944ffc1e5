from __future__ import annotations

import sys

import questionary
import typer
from questionary import Choice, Style

from . import console

# questionary gives inline, non-fullscreen selections.

_SELECT_STYLE = Style(
    [
        ("pointer", "ansiyellow bold"),
        ("selected", "ansicyan bold"),
        ("highlighted", "ansicyan bold"),
        ("instruction", "ansiblack"),
    ]
)


def is_interactive() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty()


def select_item(message: str, choices: list[Choice]) -> str:
    try:
        result = questionary.select(
            message,
            choices=choices,
            default=None,
            use_shortcuts=False,
            pointer="▶",
            style=_SELECT_STYLE,
        ).ask()
    except KeyboardInterrupt:
        _abort_interactive()
    if result is None:
        _abort_interactive()
    return str(result)


def confirm_choice(message: object, *, default: bool = True, assume_yes: bool = False) -> bool:
    if assume_yes:
        return True
    if not is_interactive():
        return default
    prompt = str(getattr(message, "plain", message))
    choices = [
        Choice(title="Yes", value=True),
        Choice(title="No", value=False),
    ]
    try:
        result = questionary.select(
            prompt,
            choices=choices,
            default=choices[0] if default else choices[1],
            use_shortcuts=False,
            pointer="▶",
            style=_SELECT_STYLE,
        ).ask()
    except KeyboardInterrupt:
        _abort_interactive()
    if result is None:
        _abort_interactive()
    return bool(result)


def ask_text(message: str, *, default: str | None = None, secret: bool = False, required: bool = True) -> str:
    while True:
        value = typer.prompt(
            message,
            default=default if default is not None else ("" if not required else None),
            hide_input=secret,
            show_default=default is not None and not secret,
        )
        value = str(value).strip()
        if value or not required:
            return value
        console.err(f"{message} cannot be empty.")


def _abort_interactive() -> None:
    console.err("Aborted by user.")
    raise typer.Exit(code=1)
