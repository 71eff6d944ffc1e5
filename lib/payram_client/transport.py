from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .config_types import ClientConfig

log = logging.getLogger(__name__)

API_KEY_HEADER = "API-Key"
SUCCESS_STATUSES = frozenset({200, 201})
SECRET_FIELDS = frozenset({"key", "apiKey", "token", "accessToken", "password"})
REDACTED = "[redacted]"


@dataclass(frozen=True)
class ApiResponse:
    """Status code and raw body of one gateway call.

    ``status`` is 0 when the request never produced an HTTP response
    (connection refused, timeout, DNS failure).
    """

    status: int
    body: str

    @property
    def ok(self) -> bool:
        return self.status in SUCCESS_STATUSES

    def json(self) -> Any:
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except ValueError:
            return None

    def field(self, name: str) -> Any:
        data = self.json()
        if isinstance(data, dict):
            return data.get(name)
        return None


def _redact(value: str) -> str:
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"


def _mask(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: REDACTED if k in SECRET_FIELDS and isinstance(v, str) else _mask(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_mask(v) for v in data]
    return data


def redact_body(body: str) -> str:
    """Response text safe for logs: credential fields of JSON bodies are masked."""
    try:
        data = json.loads(body)
    except ValueError:
        return body
    if not isinstance(data, (dict, list)):
        return body
    return json.dumps(_mask(data), separators=(",", ":"))


class Transport:
    def __init__(self, cfg: ClientConfig, *, http_transport: httpx.BaseTransport | None = None):
        self._cfg = cfg
        headers = {"User-Agent": cfg.user_agent, "Content-Type": "application/json"}
        if cfg.api_key:
            headers[API_KEY_HEADER] = cfg.api_key
        self._client = httpx.Client(
            base_url=cfg.base_url.rstrip("/"),
            timeout=cfg.timeout_s,
            headers=headers,
            follow_redirects=True,
            transport=http_transport,
        )

    def close(self) -> None:
        self._client.close()

    def set_api_key(self, api_key: str) -> None:
        self._client.headers[API_KEY_HEADER] = api_key

    def send(
        self,
        description: str,
        method: str,
        path: str,
        *,
        json_body: Any | None = None,
    ) -> ApiResponse:
        if log.isEnabledFor(logging.DEBUG):
            key = self._client.headers.get(API_KEY_HEADER)
            auth = f"{API_KEY_HEADER}: {_redact(key)}" if key else "(none)"
            log.debug("%s -> %s %s (auth %s)", description, method, path, auth)
        try:
            r = self._client.request(method, path, json=json_body)
        except httpx.RequestError as e:
            log.warning("%s: request failed: %s", description, e)
            result = ApiResponse(status=0, body="")
        else:
            result = ApiResponse(status=r.status_code, body=r.text)
        log.info("%s: status=%s body=%s", description, result.status, redact_body(result.body)[:2000])
        return result

    def status(self, description: str, method: str, path: str, *, json_body: Any | None = None) -> int:
        return self.send(description, method, path, json_body=json_body).status
