import json

import httpx
import pytest

from syncgate.panel.client import (
    NOT_MODIFIED,
    PanelClient,
    PanelError,
    mbps_to_bytes_per_second,
    parse_node,
    parse_subscribers,
)
from syncgate.schemas import OnlineEndpoint, ShadowsocksPluginNode, TrojanNode, UsageRecord, VlessNode
from syncgate.settings import Settings

NODE_PAYLOAD = {
    "id": 7,
    "type": "VLESS",
    "listeningport": 443,
    "security": "reality",
    "networksettings": {"network": "tcp"},
    "securitysettings": {"dest": "www.example.com:443", "privateKey": "pk", "shortIds": ["ab"]},
    "speedlimit": 8,
    "blockingrules": {"port": "25", "domain": "geosite:ads,geosite:tracker", "ip": [], "protocol": ""},
    "updateinterval": 30,
    "flow": "xtls-rprx-vision",
}


def _settings() -> Settings:
    return Settings(panel_api_host="http://panel.test", panel_api_key="k3y", panel_retry_count=0)


def _client(handler) -> PanelClient:  # noqa: ANN001
    http = httpx.AsyncClient(base_url="http://panel.test", transport=httpx.MockTransport(handler))
    return PanelClient(_settings(), 7, client=http)


def test_mbps_conversion() -> None:
    assert mbps_to_bytes_per_second(8) == 1_000_000
    assert mbps_to_bytes_per_second(0) == 0
    assert mbps_to_bytes_per_second(None) == 0
    assert mbps_to_bytes_per_second("bad") == 0


def test_parse_node_maps_panel_keys() -> None:
    node = parse_node(NODE_PAYLOAD)

    assert isinstance(node, VlessNode)
    assert node.node_id == 7
    assert node.speed_limit == 1_000_000
    assert node.update_interval == 30
    assert node.tls_settings.short_ids == ("ab",)
    assert node.blocking_rules.domains == ("geosite:ads", "geosite:tracker")
    assert node.blocking_rules.ips == ()
    assert node.flow == "xtls-rprx-vision"


def test_parse_node_variants_and_default_interval() -> None:
    assert isinstance(parse_node({"id": 1, "type": "trojan", "listeningport": 1}), TrojanNode)
    plugin = parse_node({"id": 1, "type": "shadowsocks-plugin", "listeningport": 1}, default_interval=90)
    assert isinstance(plugin, ShadowsocksPluginNode)
    assert plugin.update_interval == 90


def test_parse_subscribers() -> None:
    rows = parse_subscribers([{"id": 3, "email": "a@b", "passwd": "p", "iplimit": 2, "speedlimit": 16}])
    assert rows[0].id == 3
    assert rows[0].ip_limit == 2
    assert rows[0].speed_limit == 2_000_000


@pytest.mark.asyncio
async def test_fetch_node_sends_etag_and_maps_304() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.headers.get("If-None-Match") == '"v1"':
            return httpx.Response(304)
        return httpx.Response(200, json={"data": NODE_PAYLOAD}, headers={"ETag": '"v1"'})

    client = _client(handler)

    first = await client.fetch_node()
    second = await client.fetch_node()

    assert isinstance(first, VlessNode)
    assert second is NOT_MODIFIED
    assert seen[0].url.path == "/api/server/info/7"
    assert json.loads(seen[0].content) == {"key": "k3y"}
    assert "If-None-Match" not in seen[0].headers

    client.invalidate()
    assert isinstance(await client.fetch_node(), VlessNode)


@pytest.mark.asyncio
async def test_fetch_subscribers_and_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/api/server/subscription/lists/"):
            return httpx.Response(200, json={"data": [{"id": 1, "email": "e", "passwd": "p"}]})
        return httpx.Response(500, text="boom")

    client = _client(handler)

    rows = await client.fetch_subscribers()
    assert [row.id for row in rows] == [1]
    with pytest.raises(PanelError, match="500"):
        await client.fetch_node()
    with pytest.raises(PanelError):
        await client.fetch_relay_node()


@pytest.mark.asyncio
async def test_missing_data_and_bad_json_are_errors() -> None:
    responses = iter([httpx.Response(200, json={"ok": True}), httpx.Response(200, text="<html>")])
    client = _client(lambda request: next(responses))

    with pytest.raises(PanelError, match="missing data"):
        await client.fetch_node()
    with pytest.raises(PanelError, match="invalid JSON"):
        await client.fetch_node()


@pytest.mark.asyncio
async def test_unparseable_node_drops_cached_etag() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"id": 1, "type": "wireguard"}}, headers={"ETag": '"bad"'})

    client = _client(handler)
    for _ in range(2):
        with pytest.raises(PanelError, match="parse node info failed"):
            await client.fetch_node()

    assert "If-None-Match" not in seen[1].headers


@pytest.mark.asyncio
async def test_transport_errors_become_panel_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(PanelError, match="ConnectError"):
        await _client(handler).fetch_subscribers()


@pytest.mark.asyncio
async def test_reports_post_rows() -> None:
    bodies: dict[str, dict] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        bodies[request.url.path] = json.loads(request.content)
        return httpx.Response(200, json={"ret": 1})

    client = _client(handler)
    await client.report_usage([UsageRecord(id=1, upload=10, download=20)])
    await client.report_online([OnlineEndpoint(id=1, ip="203.0.113.5")])

    assert bodies["/api/server/subscription/traffic/7"] == {
        "key": "k3y",
        "data": [{"id": 1, "upload": 10, "download": 20}],
    }
    assert bodies["/api/server/subscription/onlineip/7"]["data"] == [{"id": 1, "ip": "203.0.113.5"}]


@pytest.mark.asyncio
async def test_relay_node_parsing() -> None:
    payload = {"id": 9, "type": "trojan", "address": "10.0.0.9", "listeningport": 8443, "security": "tls"}
    client = _client(lambda request: httpx.Response(200, json={"data": payload}))

    relay = await client.fetch_relay_node()

    assert relay.node_type == "trojan"
    assert relay.address == "10.0.0.9"
    assert relay.listening_port == 8443
