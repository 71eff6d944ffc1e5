from __future__ import annotations

import ipaddress
import logging
import socket

import httpx

log = logging.getLogger(__name__)

IP_SERVICES = (
    "https://ipinfo.io/ip",
    "https://ip.seeip.org",
    "https://ifconfig.me/ip",
    "https://api.ipify.org",
    "https://checkip.amazonaws.com",
)
IP_TIMEOUT = httpx.Timeout(10.0, connect=5.0)
DOCKER_REGISTRY_URL = "https://registry-1.docker.io/v2/"
REGISTRY_TIMEOUT = httpx.Timeout(10.0)


def is_public_ipv4(value: str) -> bool:
    try:
        ip = ipaddress.ip_address(value.strip())
    except ValueError:
        return False
    return ip.version == 4 and ip.is_global


def _route_source_ip() -> str | None:
    # UDP connect sends nothing; it only asks the kernel which source address it would use
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
        except OSError:
            return None


def detect_public_ip(services=IP_SERVICES, *, client: httpx.Client | None = None) -> str | None:
    own_client = client is None
    client = client or httpx.Client(timeout=IP_TIMEOUT, follow_redirects=True)
    try:
        for url in services:
            try:
                resp = client.get(url)
            except httpx.HTTPError as exc:
                log.debug("public ip lookup via %s failed: %s", url, exc)
                continue
            if resp.status_code != 200:
                continue
            lines = resp.text.strip().splitlines()
            candidate = lines[0].strip() if lines else ""
            if is_public_ipv4(candidate):
                return candidate
    finally:
        if own_client:
            client.close()
    local = _route_source_ip()
    if local and is_public_ipv4(local):
        return local
    return None


def registry_reachable(url: str = DOCKER_REGISTRY_URL, *, client: httpx.Client | None = None) -> bool:
    """Any HTTP answer counts; the registry replies 401 to anonymous requests."""
    own_client = client is None
    client = client or httpx.Client(timeout=REGISTRY_TIMEOUT)
    try:
        client.get(url)
    except httpx.HTTPError as exc:
        log.warning("docker registry %s unreachable: %s", url, exc)
        return False
    finally:
        if own_client:
            client.close()
    return True


def access_urls(public_ip: str | None, domain: str | None) -> list[tuple[str, str]]:
    urls = [("Local dashboard", "http://localhost"), ("Local API", "http://localhost:8080")]
    if domain:
        urls += [("Dashboard", f"https://{domain}"), ("API", f"https://{domain}:8443")]
    elif public_ip:
        urls += [("Dashboard", f"http://{public_ip}"), ("API", f"http://{public_ip}:8080")]
    return urls
