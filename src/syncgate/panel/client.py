from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError

from syncgate.schemas import (
    NODE_ADAPTER,
    NodeDescriptor,
    OnlineEndpoint,
    RelayNodeDescriptor,
    SubscriberRecord,
    UsageRecord,
)
from syncgate.settings import Settings

logger = logging.getLogger("syncgate.panel")


class FetchStatus(str, Enum):
    NOT_MODIFIED = "not_modified"


NOT_MODIFIED = FetchStatus.NOT_MODIFIED


class PanelError(RuntimeError):
    pass


def mbps_to_bytes_per_second(value: Any) -> int:
    try:
        mbps = float(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(0, int(mbps * 1_000_000) // 8)


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return tuple(str(part).strip() for part in value if str(part).strip())


def _transport(raw: dict[str, Any]) -> dict[str, Any]:
    headers = raw.get("headers") if isinstance(raw.get("headers"), dict) else {}
    return {
        "network": str(raw.get("network") or raw.get("transport") or "tcp"),
        "path": str(raw.get("path") or ""),
        "host": str(raw.get("host") or headers.get("Host") or ""),
        "service_name": str(raw.get("serviceName") or raw.get("servicename") or ""),
        "header_type": str((raw.get("header") or {}).get("type") or raw.get("headertype") or "none"),
    }


def _tls(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "server_name": str(raw.get("serverName") or raw.get("sni") or ""),
        "cert_mode": str(raw.get("certMode") or raw.get("certmode") or "none").lower(),
        "cert_domain": str(raw.get("certDomainName") or raw.get("certdomain") or ""),
        "cert_file": str(raw.get("certFile") or ""),
        "key_file": str(raw.get("keyFile") or ""),
        "alpn": _as_tuple(raw.get("alpn")),
        "dest": str(raw.get("dest") or ""),
        "private_key": str(raw.get("privateKey") or raw.get("privatekey") or ""),
        "short_ids": _as_tuple(raw.get("shortIds") or raw.get("shortids")),
        "server_names": _as_tuple(raw.get("serverNames") or raw.get("servernames")),
    }


def parse_node(data: dict[str, Any], *, default_interval: int = 60) -> NodeDescriptor:
    """Map the panel's server-info payload onto a node descriptor variant."""
    node_type = str(data.get("type") or "").strip()
    if node_type.lower() == "shadowsocks-plugin":
        node_type = "Shadowsocks-Plugin"
    else:
        node_type = node_type.lower()
    blocking = data.get("blockingrules") if isinstance(data.get("blockingrules"), dict) else {}
    payload = {
        "node_type": node_type,
        "node_id": int(data.get("id") or 0),
        "listening_port": int(data.get("listeningport") or data.get("port") or 0),
        "listen_ip": str(data.get("listenip") or "0.0.0.0"),
        "security": str(data.get("security") or "none").lower(),
        "transport": _transport(data.get("networksettings") or {}),
        "tls_settings": _tls(data.get("securitysettings") or data.get("tlssettings") or {}),
        "speed_limit": mbps_to_bytes_per_second(data.get("speedlimit")),
        "relay_type": int(data.get("relay") or data.get("relaytype") or 0),
        "relay_node_id": int(data.get("relayid") or data.get("relaynodeid") or 0),
        "blocking_rules": {
            "port": str(blocking.get("port") or ""),
            "domains": _as_tuple(blocking.get("domain")),
            "ips": _as_tuple(blocking.get("ip")),
            "protocols": _as_tuple(blocking.get("protocol")),
        },
        "update_interval": int(data.get("updateinterval") or default_interval),
        "sniffing": bool(data.get("sniffing", True)),
        "cipher": str(data.get("cipher") or "aes-128-gcm"),
        "server_key": str(data.get("serverkey") or ""),
        "flow": str(data.get("flow") or ""),
    }
    return NODE_ADAPTER.validate_python(payload)


def parse_relay_node(data: dict[str, Any]) -> RelayNodeDescriptor:
    tls = _tls(data.get("securitysettings") or data.get("tlssettings") or {})
    return RelayNodeDescriptor(
        node_id=int(data.get("id") or 0),
        node_type=str(data.get("type") or ""),
        address=str(data.get("address") or data.get("host") or ""),
        listening_port=int(data.get("listeningport") or data.get("port") or 0),
        security=str(data.get("security") or "none").lower(),
        transport=_transport(data.get("networksettings") or {}),
        tls_settings=tls,
        cipher=str(data.get("cipher") or ""),
        server_key=str(data.get("serverkey") or ""),
        flow=str(data.get("flow") or ""),
        public_key=str((data.get("securitysettings") or {}).get("publicKey") or ""),
        short_id=str((data.get("securitysettings") or {}).get("shortId") or ""),
    )


def parse_subscribers(rows: list[dict[str, Any]]) -> list[SubscriberRecord]:
    out: list[SubscriberRecord] = []
    for row in rows:
        out.append(
            SubscriberRecord(
                id=int(row["id"]),
                email=str(row.get("email") or ""),
                passwd=str(row.get("passwd") or ""),
                ip_limit=int(row.get("iplimit") or 0),
                speed_limit=mbps_to_bytes_per_second(row.get("speedlimit")),
            )
        )
    return out


class PanelClient:
    """
    HTTP client for one node identity on the panel.

    Fetches send `If-None-Match` with the last ETag seen for that resource; HTTP 304 is
    returned as `NOT_MODIFIED` rather than raised.
    """

    def __init__(self, settings: Settings, node_id: int, *, client: httpx.AsyncClient | None = None) -> None:
        self.api_host = settings.panel_api_host.rstrip("/")
        self.node_id = int(node_id)
        self._key = settings.panel_api_key
        self._default_interval = int(settings.default_update_interval)
        self._etags: dict[str, str] = {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.api_host,
            timeout=float(settings.panel_timeout_seconds or 30),
            transport=httpx.AsyncHTTPTransport(retries=max(0, int(settings.panel_retry_count))),
        )

    def invalidate(self) -> None:
        """Forget cached ETags so the next fetches return full payloads."""
        self._etags.clear()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, path: str, body: dict[str, Any], *, etag_key: str | None = None) -> httpx.Response:
        headers: dict[str, str] = {}
        if etag_key and self._etags.get(etag_key):
            headers["If-None-Match"] = self._etags[etag_key]
        try:
            return await self._client.post(path.format(node_id=self.node_id), json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise PanelError(f"request {path} failed: {type(exc).__name__}: {exc}") from exc

    async def _fetch(self, path: str, etag_key: str) -> Any:
        response = await self._post(path, {"key": self._key}, etag_key=etag_key)
        if response.status_code == 304:
            logger.debug("panel_not_modified resource=%s node_id=%s", etag_key, self.node_id)
            return NOT_MODIFIED
        if response.status_code >= 400:
            raise PanelError(f"request {response.request.url} failed: {response.status_code} {response.text[:200]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise PanelError(f"invalid JSON from {response.request.url}: {response.text[:200]}") from exc
        if not isinstance(payload, dict) or "data" not in payload:
            raise PanelError(f"unexpected response from {response.request.url}: missing data")
        etag = response.headers.get("ETag")
        if etag:
            self._etags[etag_key] = etag
        return payload["data"]

    async def fetch_node(self) -> NodeDescriptor | FetchStatus:
        data = await self._fetch("/api/server/info/{node_id}", "node")
        if data is NOT_MODIFIED:
            return NOT_MODIFIED
        try:
            return parse_node(data, default_interval=self._default_interval)
        except (ValidationError, TypeError, ValueError) as exc:
            self._etags.pop("node", None)
            raise PanelError(f"parse node info failed: {exc}") from exc

    async def fetch_relay_node(self) -> RelayNodeDescriptor:
        # Relay info is always fetched fresh; it is only requested on dirty ticks.
        response = await self._post("/api/server/relayinfo/{node_id}", {"key": self._key})
        if response.status_code >= 400:
            raise PanelError(f"relay info request failed: {response.status_code} {response.text[:200]}")
        try:
            return parse_relay_node(response.json()["data"])
        except (ValidationError, KeyError, TypeError, ValueError) as exc:
            raise PanelError(f"parse relay node info failed: {exc}") from exc

    async def fetch_subscribers(self) -> list[SubscriberRecord] | FetchStatus:
        data = await self._fetch("/api/server/subscription/lists/{node_id}", "subscriptions")
        if data is NOT_MODIFIED:
            return NOT_MODIFIED
        try:
            return parse_subscribers(list(data or []))
        except (ValidationError, KeyError, TypeError, ValueError) as exc:
            self._etags.pop("subscriptions", None)
            raise PanelError(f"parse subscription list failed: {exc}") from exc

    async def _report(self, path: str, data: list[dict[str, Any]]) -> None:
        response = await self._post(path, {"key": self._key, "data": data})
        if response.status_code >= 400:
            raise PanelError(f"request {response.request.url} failed: {response.status_code} {response.text[:200]}")

    async def report_usage(self, rows: list[UsageRecord]) -> None:
        data = [{"id": row.id, "upload": row.upload, "download": row.download} for row in rows]
        await self._report("/api/server/subscription/traffic/{node_id}", data)

    async def report_online(self, rows: list[OnlineEndpoint]) -> None:
        data = [{"id": row.id, "ip": row.ip} for row in rows]
        await self._report("/api/server/subscription/onlineip/{node_id}", data)
