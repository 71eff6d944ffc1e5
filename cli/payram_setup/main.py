from __future__ import annotations

import logging

import typer

from .commands import install_cmd, provision_cmd, reset_cmd, restart_cmd, status_cmd, update_cmd
from .logging_ import setup_logging


def _build_app() -> typer.Typer:
    app = typer.Typer(
        name="payram-setup",
        help="Install, provision and operate a self-hosted PayRam gateway.",
        no_args_is_help=True,
    )

    app.command("install")(install_cmd.install)
    app.command("provision")(provision_cmd.provision)
    app.command("update")(update_cmd.update)
    app.command("reset")(reset_cmd.reset)
    app.command("restart")(restart_cmd.restart)
    app.command("status")(status_cmd.status)

    @app.callback()
    def _main(
            verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logs."),
    ):
        log_file = setup_logging(verbose)
        if log_file is not None:
            logging.getLogger("payram_setup").debug("setup log: %s", log_file)

    return app


app = _build_app()
