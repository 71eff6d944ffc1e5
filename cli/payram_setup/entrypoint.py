from __future__ import annotations

import sys


def main() -> None:
    from . import prompts
    from .main import app
    from .menu import run_operations_menu

    if len(sys.argv) == 1 and prompts.is_interactive():
        tokens = run_operations_menu()
        if not tokens:
            raise SystemExit(0)
        sys.argv = [sys.argv[0], *tokens]
    app()


if __name__ == "__main__":
    main()
