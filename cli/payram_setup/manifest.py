"""Provisioning manifest: projects, chains, wallets and configuration to push.

Example::

    email: admin@example.com
    password: s3cret
    backend: https://api.example.com
    frontend: https://pay.example.com
    postal_endpoint: https://postal.example.com
    postal_api_key: abc123
    projects:
      shop:
        name: My Shop
        website: https://shop.example.com
        successEndpoint: https://shop.example.com/thanks
        webhookEndpoint: https://shop.example.com/hook
    blockchain:
      ETH:
        client: geth
        server: https://eth.example.com
        explorer_tx_url: https://etherscan.io/tx/{tx}
        explorer_address_url: https://etherscan.io/address/{address}
        confirmations: 12
    wallets:
      ETH:
        xpub: xpub6...
        count: 20
    configuration:
      payram.currency: USD
    email_templates:
      welcome: {file: templates/welcome.html}
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

REQUIRED_TOP_LEVEL = ("email", "password", "backend", "frontend", "postal_endpoint", "postal_api_key")
REQUIRED_PROJECT_FIELDS = ("name", "website", "successEndpoint", "webhookEndpoint")
REQUIRED_CHAIN_FIELDS = ("client", "server", "explorer_tx_url", "explorer_address_url", "confirmations")
DEFAULT_ADDRESS_COUNT = 10

# configuration keys pushed from top-level settings; the manifest may not set them directly
KEY_BACKEND = "payram.backend"
KEY_FRONTEND = "payram.frontend"
KEY_WEBSOCKET = "payram.websocketServerUrl"
KEY_POSTAL_ENDPOINT = "postal.endpoint"
KEY_POSTAL_API_KEY = "postal.apiKey"
KEY_WEBHOOK = "payram.webhookKey"
RESERVED_CONFIG_KEYS = (KEY_BACKEND, KEY_FRONTEND, KEY_WEBSOCKET, KEY_POSTAL_ENDPOINT, KEY_POSTAL_API_KEY, KEY_WEBHOOK)
TEMPLATE_KEY_PREFIX = "email.template."

_KEY_RE = re.compile(r"^[^\s]+$")


class ManifestError(Exception):
    def __init__(self, problems: list[str]):
        super().__init__("; ".join(problems))
        self.problems = problems


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


@dataclass(frozen=True)
class ProjectDefinition:
    key: str
    name: str
    website: str
    success_endpoint: str
    webhook_endpoint: str


@dataclass(frozen=True)
class BlockchainNetworkConfig:
    symbol: str
    client: str
    server: str
    explorer_tx_url: str
    explorer_address_url: str
    confirmations: str
    username: str = ""
    password: str = ""

    @property
    def missing_fields(self) -> list[str]:
        return [name for name in REQUIRED_CHAIN_FIELDS if not getattr(self, name)]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields

    def payload(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "client": self.client,
            "server": self.server,
            "explorerTransactionUrl": self.explorer_tx_url,
            "explorerAddressUrl": self.explorer_address_url,
            "minConfirmations": int(self.confirmations) if self.confirmations.isdigit() else self.confirmations,
        }
        if self.username:
            body["serverUsername"] = self.username
        if self.password:
            body["serverPassword"] = self.password
        return body


@dataclass(frozen=True)
class WalletKey:
    family: str
    xpub: str
    count: int = DEFAULT_ADDRESS_COUNT


@dataclass(frozen=True)
class ConfigurationEntry:
    key: str
    value: str


@dataclass
class Manifest:
    settings: dict[str, str]
    projects: list[ProjectDefinition] = field(default_factory=list)
    blockchains: list[BlockchainNetworkConfig] = field(default_factory=list)
    wallets: list[WalletKey] = field(default_factory=list)
    configuration: list[ConfigurationEntry] = field(default_factory=list)
    email_templates: dict[str, str] = field(default_factory=dict)

    def get(self, key: str, default: str = "") -> str:
        return self.settings.get(key) or default


def _valid_key(section: str, key: str, problems: list[str]) -> bool:
    if not _KEY_RE.match(key):
        problems.append(f"{section} key {key!r} must be non-empty and contain no whitespace")
        return False
    return True


def _section(data: dict, name: str, problems: list[str]) -> dict:
    raw = data.get(name)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        problems.append(f"'{name}' must be a mapping")
        return {}
    return raw


def parse_manifest(data: Any, *, base_dir: Path | None = None) -> Manifest:
    """Validate everything up front so nothing remote is touched for a bad manifest."""
    if not isinstance(data, dict):
        raise ManifestError(["manifest must be a mapping at the top level"])
    problems: list[str] = []

    settings = {str(k): _text(v) for k, v in data.items() if not isinstance(v, (dict, list))}
    for key in REQUIRED_TOP_LEVEL:
        if not settings.get(key):
            problems.append(f"missing required setting '{key}'")

    projects: list[ProjectDefinition] = []
    for key, raw in _section(data, "projects", problems).items():
        key = str(key)
        if not _valid_key("project", key, problems):
            continue
        if not isinstance(raw, dict):
            problems.append(f"project '{key}' must be a mapping")
            continue
        values = {name: _text(raw.get(name)) for name in REQUIRED_PROJECT_FIELDS}
        empty = [name for name, value in values.items() if not value]
        if empty:
            problems.append(f"project '{key}' is missing {', '.join(empty)}")
            continue
        projects.append(
            ProjectDefinition(
                key=key,
                name=values["name"],
                website=values["website"],
                success_endpoint=values["successEndpoint"],
                webhook_endpoint=values["webhookEndpoint"],
            )
        )

    blockchains: list[BlockchainNetworkConfig] = []
    for symbol, raw in _section(data, "blockchain", problems).items():
        symbol = str(symbol).upper()
        if not _valid_key("blockchain", symbol, problems):
            continue
        if symbol in {c.symbol for c in blockchains}:
            problems.append(f"blockchain '{symbol}' is listed more than once")
            continue
        raw = raw if isinstance(raw, dict) else {}
        blockchains.append(
            BlockchainNetworkConfig(
                symbol=symbol,
                client=_text(raw.get("client")),
                server=_text(raw.get("server")),
                explorer_tx_url=_text(raw.get("explorer_tx_url")),
                explorer_address_url=_text(raw.get("explorer_address_url")),
                confirmations=_text(raw.get("confirmations")),
                username=_text(raw.get("username")),
                password=_text(raw.get("password")),
            )
        )

    wallets: list[WalletKey] = []
    for family, raw in _section(data, "wallets", problems).items():
        family = str(family).upper()
        if not _valid_key("wallet", family, problems):
            continue
        if family in {w.family for w in wallets}:
            problems.append(f"wallet '{family}' is listed more than once")
            continue
        raw = raw if isinstance(raw, dict) else {}
        count_raw = raw.get("count", DEFAULT_ADDRESS_COUNT)
        try:
            count = int(count_raw)
        except (TypeError, ValueError):
            problems.append(f"wallet '{family}' count must be an integer")
            continue
        if count < 1:
            problems.append(f"wallet '{family}' count must be positive")
            continue
        wallets.append(WalletKey(family=family, xpub=_text(raw.get("xpub")), count=count))

    configuration: list[ConfigurationEntry] = []
    for key, value in _section(data, "configuration", problems).items():
        key = str(key)
        if not _valid_key("configuration", key, problems):
            continue
        if key in RESERVED_CONFIG_KEYS or key.startswith(TEMPLATE_KEY_PREFIX):
            problems.append(f"configuration key '{key}' is set by the installer; use the top-level setting instead")
            continue
        configuration.append(ConfigurationEntry(key=key, value=_text(value)))

    templates: dict[str, str] = {}
    for name, raw in _section(data, "email_templates", problems).items():
        name = str(name)
        if not _valid_key("email template", name, problems):
            continue
        if isinstance(raw, dict) and raw.get("file"):
            path = Path(str(raw["file"])).expanduser()
            if not path.is_absolute() and base_dir is not None:
                path = base_dir / path
            try:
                templates[name] = path.read_text(encoding="utf-8")
            except OSError as exc:
                problems.append(f"email template '{name}': cannot read {path}: {exc.strerror}")
        elif isinstance(raw, str) and raw.strip():
            templates[name] = raw
        else:
            problems.append(f"email template '{name}' is empty")

    if problems:
        raise ManifestError(problems)
    return Manifest(
        settings=settings,
        projects=projects,
        blockchains=blockchains,
        wallets=wallets,
        configuration=configuration,
        email_templates=templates,
    )


def load_manifest(path: Path) -> Manifest:
    path = Path(path).expanduser()
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ManifestError([f"manifest not found: {path}"]) from None
    except yaml.YAMLError as exc:
        raise ManifestError([f"manifest is not valid YAML: {exc}"]) from None
    return parse_manifest(data, base_dir=path.parent)
