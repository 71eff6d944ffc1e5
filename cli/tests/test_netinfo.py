import httpx

from payram_setup import netinfo


def test_private_and_reserved_addresses_are_not_public() -> None:
    assert netinfo.is_public_ipv4("8.8.8.8")
    for value in ("10.1.2.3", "192.168.0.10", "172.16.5.4", "127.0.0.1", "100.64.0.1", "not-an-ip", "::1"):
        assert not netinfo.is_public_ipv4(value)


def test_detect_public_ip_skips_bad_answers(monkeypatch) -> None:
    answers = {
        "a.test": httpx.Response(500),
        "b.test": httpx.Response(200, text="192.168.1.20\n"),
        "c.test": httpx.Response(200, text="203.0.113.7\n"),
    }

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.test":
            raise httpx.ConnectTimeout("timed out", request=request)
        return answers[request.url.host]

    monkeypatch.setattr(netinfo, "_route_source_ip", lambda: None)
    client = httpx.Client(transport=httpx.MockTransport(_handler))
    services = ("https://down.test/ip", "https://a.test/ip", "https://b.test/ip", "https://c.test/ip")

    # 203.0.113.0/24 is documentation space, so it is not global either
    assert netinfo.detect_public_ip(services, client=client) is None

    answers["c.test"] = httpx.Response(200, text="93.184.216.34")
    assert netinfo.detect_public_ip(services, client=client) == "93.184.216.34"


def test_access_urls_prefer_domain() -> None:
    urls = dict(netinfo.access_urls("93.184.216.34", "pay.example.com"))
    assert urls["Dashboard"] == "https://pay.example.com"
    assert dict(netinfo.access_urls("93.184.216.34", None))["API"] == "http://93.184.216.34:8080"
