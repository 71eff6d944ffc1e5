from __future__ import annotations

from typing import Any

import httpx

from .config_types import ClientConfig
from .transport import ApiResponse, Transport

API_KEY_ROLE_ADMIN = "admin"


class GatewayClient:
    """Calls against a freshly started PayRam gateway container.

    Every method returns the raw :class:`ApiResponse`; callers decide what a
    failure means for their step.
    """

    def __init__(self, cfg: ClientConfig, *, http_transport: httpx.BaseTransport | None = None):
        self._t = Transport(cfg, http_transport=http_transport)

    def close(self) -> None:
        self._t.close()

    def use_api_key(self, api_key: str) -> None:
        self._t.set_api_key(api_key)

    # --- auth ---
    def signup(self, *, email: str, password: str) -> ApiResponse:
        return self._t.send("Sign up root user", "POST", "/signup", json_body={"email": email, "password": password})

    def signin(self, *, email: str, password: str) -> ApiResponse:
        return self._t.send("Sign in root user", "POST", "/signin", json_body={"email": email, "password": password})

    # --- configuration ---
    def set_configuration(self, key: str, value: str) -> ApiResponse:
        return self._t.send(
            f"Set configuration {key}",
            "POST",
            "/configuration",
            json_body={"key": key, "value": value},
        )

    def update_blockchain(self, symbol: str, payload: dict[str, Any]) -> ApiResponse:
        return self._t.send(
            f"Update blockchain {symbol}",
            "PUT",
            f"/blockchain/{symbol.upper()}",
            json_body=payload,
        )

    # --- wallets ---
    def register_xpub(self, family: str, xpub: str) -> ApiResponse:
        return self._t.send(
            f"Register xpub for {family}",
            "POST",
            f"/blockchain-family/{family.upper()}/xpub",
            json_body={"xpub": xpub},
        )

    def generate_addresses(self, family: str, count: int) -> ApiResponse:
        return self._t.send(
            f"Generate {count} deposit addresses for {family}",
            "POST",
            f"/blockchain-family/{family.upper()}/generate",
            json_body={"count": int(count)},
        )

    # --- projects ---
    def create_external_platform(
        self,
        *,
        name: str,
        website: str,
        success_endpoint: str,
        webhook_endpoint: str,
    ) -> ApiResponse:
        return self._t.send(
            f"Create project {name}",
            "POST",
            "/external-platform",
            json_body={
                "name": name,
                "website": website,
                "successEndpoint": success_endpoint,
                "webhookEndpoint": webhook_endpoint,
            },
        )

    def create_api_key(self, platform_id: int, *, role: str = API_KEY_ROLE_ADMIN) -> ApiResponse:
        return self._t.send(
            f"Create {role} API key for project {platform_id}",
            "POST",
            "/api-key",
            json_body={"externalPlatformID": int(platform_id), "role": role},
        )

    # --- liveness ---
    def probe_root(self) -> int:
        return self._t.status("Readiness probe", "GET", "/")
