from __future__ import annotations

import httpx

from payram_client import GatewayClient
from payram_client.config_types import ClientConfig

from .config import API_PORT

LOCAL_API_URL = f"http://127.0.0.1:{API_PORT}"


def make_client(
    *,
    base_url: str = LOCAL_API_URL,
    http_transport: httpx.BaseTransport | None = None,
) -> GatewayClient:
    return GatewayClient(ClientConfig(base_url=base_url.rstrip("/")), http_transport=http_transport)
