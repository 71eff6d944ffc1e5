from __future__ import annotations

import typer

from .. import console
from ..config import ConfigError, load_config, resolve_paths
from ..container import ContainerController
from ..state_store import StateStore


def status(
    json_output: bool = typer.Option(False, "--json", help="Print machine-readable JSON."),
) -> None:
    """Show installation state: saved version, container and completed steps."""
    paths = resolve_paths()
    controller = ContainerController()
    markers = StateStore(paths.state_file).markers()
    try:
        cfg = load_config(paths)
        tag, network = cfg.IMAGE_TAG, cfg.NETWORK_TYPE
    except ConfigError:
        tag = network = None

    data = {
        "config_dir": str(paths.info_dir),
        "data_dir": str(paths.core_dir),
        "image_tag": tag,
        "network": network,
        "container": controller.status_line() or None,
        "running": controller.is_running(),
        "markers": markers,
    }
    if json_output:
        console.print_json(data)
        return

    console.rule("PayRam status")
    console.print(f"  Config dir:  {data['config_dir']}")
    console.print(f"  Data dir:    {data['data_dir']}")
    console.print(f"  Version:     {tag or '[dim]not installed[/]'}")
    if network:
        console.print(f"  Network:     {network}")
    console.print(f"  Container:   {data['container'] or '[dim]absent[/]'}")
    console.print(f"  Steps done:  {len(markers)}")
    for marker in markers:
        console.detail(marker)
