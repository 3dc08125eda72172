"""
Pure builders turning panel descriptors into Xray JSON objects.

Every object built here carries a deterministic tag so the live data plane can be
joined back to the desired state:

  node inbound/outbound     {type}_{port}_{id}
  default routing rule      {tag}_default
  blocking rule + outbound  {tag}_blackhole
  relay hop                 Relay_{type}_{port}_{id}
  relay rule + outbound     {relay_tag}_{subscriber_id}
  user (credential/stats)   {tag}|{email}|{subscriber_id}
"""

from __future__ import annotations

import base64
from typing import Any

from syncgate.schemas import (
    NodeDescriptor,
    RelayNodeDescriptor,
    ShadowsocksNode,
    ShadowsocksPluginNode,
    SubscriberRecord,
    TransportSettings,
    TrojanNode,
    VlessNode,
    VmessNode,
)

# Required user key length in bytes per Shadowsocks 2022 method.
SS2022_KEY_LENGTHS: dict[str, int] = {
    "2022-blake3-aes-128-gcm": 16,
    "2022-blake3-aes-256-gcm": 32,
    "2022-blake3-chacha20-poly1305": 32,
}

_SNIFFING = {"enabled": True, "destOverride": ["http", "tls", "quic"], "routeOnly": False}


class TopologyError(ValueError):
    pass


class UnsupportedProtocolError(TopologyError):
    pass


class KeyDerivationError(TopologyError):
    pass


def node_tag(node: NodeDescriptor) -> str:
    return f"{node.node_type}_{node.listening_port}_{node.node_id}"


def relay_tag(relay: RelayNodeDescriptor) -> str:
    return f"Relay_{relay.node_type}_{relay.listening_port}_{relay.node_id}"


def default_rule_tag(tag: str) -> str:
    return f"{tag}_default"


def blackhole_tag(tag: str) -> str:
    return f"{tag}_blackhole"


def relay_subscriber_tag(relay_tag_value: str, subscriber_id: int) -> str:
    return f"{relay_tag_value}_{subscriber_id}"


def user_key(tag: str, subscriber: SubscriberRecord) -> str:
    return f"{tag}|{subscriber.email}|{subscriber.id}"


def is_ss2022(cipher: str) -> bool:
    return str(cipher or "").strip().lower() in SS2022_KEY_LENGTHS


def ss2022_user_key(cipher: str, secret: str) -> str:
    method = str(cipher or "").strip().lower()
    required = SS2022_KEY_LENGTHS.get(method)
    if required is None:
        raise KeyDerivationError(f"unsupported SS2022 method: {cipher}")
    raw = str(secret or "").encode("utf-8")
    if len(raw) < 16:
        raise KeyDerivationError("shadowsocks2022 key length must be at least 16 bytes")
    if len(raw) < required:
        raise KeyDerivationError(f"shadowsocks2022 key length must be at least {required} bytes for {method}")
    return base64.b64encode(raw[:required]).decode("ascii")


def derive_relay_key(cipher: str, server_key: str, secret: str) -> str:
    """Credential a subscriber presents to the relay hop."""
    if not is_ss2022(cipher):
        return secret
    return f"{server_key}:{ss2022_user_key(cipher, secret)}"


def parse_port_string(value: str) -> list[tuple[int, int]]:
    """
    Parse "53,443,1000-2000" into [(53, 53), (443, 443), (1000, 2000)].

    Empty tokens are skipped; anything else that is not a port or an `a-b` range raises.
    """
    ranges: list[tuple[int, int]] = []
    for raw in str(value or "").split(","):
        token = raw.strip()
        if not token:
            continue
        if "-" in token:
            start_raw, _, end_raw = token.partition("-")
            start = _parse_port(start_raw, token)
            end = _parse_port(end_raw, token)
            if start > end:
                raise TopologyError(f"invalid port range: {token}")
            ranges.append((start, end))
        else:
            port = _parse_port(token, token)
            ranges.append((port, port))
    return ranges


def _parse_port(raw: str, token: str) -> int:
    digits = raw.strip()
    if not digits.isdigit():
        raise TopologyError(f"invalid port number: {token}")
    port = int(digits)
    if port > 65535:
        raise TopologyError(f"port out of range: {token}")
    return port


def _format_ports(ranges: list[tuple[int, int]]) -> str:
    return ",".join(str(start) if start == end else f"{start}-{end}" for start, end in ranges)


def _stream_settings(security: str, transport: TransportSettings) -> dict[str, Any]:
    network = (transport.network or "tcp").strip().lower()
    stream: dict[str, Any] = {"network": network, "security": security or "none"}
    if network == "ws":
        ws: dict[str, Any] = {"path": transport.path or "/"}
        if transport.host:
            ws["host"] = transport.host
        stream["wsSettings"] = ws
    elif network == "grpc":
        stream["grpcSettings"] = {"serviceName": transport.service_name}
    elif network == "httpupgrade":
        stream["httpupgradeSettings"] = {"path": transport.path or "/", "host": transport.host}
    elif network == "tcp" and transport.header_type and transport.header_type != "none":
        stream["tcpSettings"] = {"header": {"type": transport.header_type}}
    return stream


def _inbound_settings(node: NodeDescriptor) -> dict[str, Any]:
    if isinstance(node, ShadowsocksPluginNode):
        raise UnsupportedProtocolError(f"inbound server with type {node.node_type} is not supported")
    if isinstance(node, VlessNode):
        return {"clients": [], "decryption": "none"}
    if isinstance(node, (VmessNode, TrojanNode)):
        return {"clients": []}
    if isinstance(node, ShadowsocksNode):
        settings: dict[str, Any] = {"clients": [], "method": node.cipher, "network": "tcp,udp"}
        if is_ss2022(node.cipher):
            settings["password"] = node.server_key
        return settings
    raise UnsupportedProtocolError(f"unknown node type: {getattr(node, 'node_type', node)!r}")


def build_inbound(node: NodeDescriptor, tag: str, *, cert_dir: str = "") -> dict[str, Any]:
    settings = _inbound_settings(node)
    stream = _stream_settings(node.security, node.transport)
    tls = node.tls_settings
    if node.security == "tls":
        tls_block: dict[str, Any] = {"serverName": tls.server_name or tls.cert_domain}
        if tls.alpn:
            tls_block["alpn"] = list(tls.alpn)
        cert_file, key_file = tls.cert_file, tls.key_file
        if tls.cert_mode in {"http", "dns"} and cert_dir:
            domain = tls.cert_domain or tls.server_name
            cert_file = f"{cert_dir.rstrip('/')}/certificates/{domain}.crt"
            key_file = f"{cert_dir.rstrip('/')}/certificates/{domain}.key"
        if cert_file and key_file:
            tls_block["certificates"] = [{"certificateFile": cert_file, "keyFile": key_file}]
        stream["tlsSettings"] = tls_block
    elif node.security == "reality":
        stream["realitySettings"] = {
            "show": False,
            "dest": tls.dest,
            "serverNames": list(tls.server_names or ((tls.server_name,) if tls.server_name else ())),
            "privateKey": tls.private_key,
            "shortIds": list(tls.short_ids) or [""],
        }
    inbound: dict[str, Any] = {
        "tag": tag,
        "listen": node.listen_ip,
        "port": node.listening_port,
        "protocol": node.node_type,
        "settings": settings,
        "streamSettings": stream,
    }
    if node.sniffing:
        inbound["sniffing"] = dict(_SNIFFING)
    return inbound


def build_outbound(tag: str) -> dict[str, Any]:
    return {"tag": tag, "protocol": "freedom", "settings": {"domainStrategy": "UseIP"}}


def build_blackhole_outbound(tag: str) -> dict[str, Any]:
    return {"tag": blackhole_tag(tag), "protocol": "blackhole", "settings": {}}


def build_default_rule(node: NodeDescriptor, tag: str) -> dict[str, Any] | None:
    # A relay head routes per user; a catch-all rule would shadow those rules.
    if node.is_relay_head:
        return None
    return {
        "type": "field",
        "ruleTag": default_rule_tag(tag),
        "inboundTag": [tag],
        "outboundTag": tag,
    }


def build_blocking_rule(node: NodeDescriptor, tag: str) -> dict[str, Any] | None:
    rules = node.blocking_rules
    if rules.is_empty():
        return None
    rule: dict[str, Any] = {
        "type": "field",
        "ruleTag": blackhole_tag(tag),
        "inboundTag": [tag],
        "outboundTag": blackhole_tag(tag),
    }
    port = rules.port.strip()
    if port and port != "0":
        ranges = parse_port_string(port)
        if ranges:
            rule["port"] = _format_ports(ranges)
    if rules.domains:
        rule["domain"] = list(rules.domains)
    if rules.ips:
        rule["ip"] = list(rules.ips)
    if rules.protocols:
        rule["protocol"] = list(rules.protocols)
    return rule


def build_relay_outbound(
    relay: RelayNodeDescriptor,
    relay_tag_value: str,
    subscriber: SubscriberRecord,
    key: str,
) -> dict[str, Any]:
    kind = relay.node_type
    if kind == "vless":
        user: dict[str, Any] = {"id": key, "encryption": "none", "email": subscriber.email}
        if relay.flow:
            user["flow"] = relay.flow
        settings: dict[str, Any] = {"vnext": [{"address": relay.address, "port": relay.listening_port, "users": [user]}]}
    elif kind == "vmess":
        settings = {
            "vnext": [
                {
                    "address": relay.address,
                    "port": relay.listening_port,
                    "users": [{"id": key, "security": "auto", "email": subscriber.email}],
                }
            ]
        }
    elif kind == "trojan":
        settings = {"servers": [{"address": relay.address, "port": relay.listening_port, "password": key}]}
    elif kind == "shadowsocks":
        settings = {
            "servers": [
                {"address": relay.address, "port": relay.listening_port, "method": relay.cipher, "password": key}
            ]
        }
    else:
        raise UnsupportedProtocolError(f"relay outbound server with type {kind} is not supported")

    stream = _stream_settings(relay.security, relay.transport)
    if relay.security == "tls":
        stream["tlsSettings"] = {"serverName": relay.tls_settings.server_name or relay.address}
    elif relay.security == "reality":
        stream["realitySettings"] = {
            "serverName": relay.tls_settings.server_name,
            "publicKey": relay.public_key,
            "shortId": relay.short_id,
            "fingerprint": "chrome",
        }
    return {
        "tag": relay_subscriber_tag(relay_tag_value, subscriber.id),
        "protocol": kind,
        "settings": settings,
        "streamSettings": stream,
    }


def build_relay_rule(tag: str, relay_tag_value: str, subscriber: SubscriberRecord) -> dict[str, Any]:
    target = relay_subscriber_tag(relay_tag_value, subscriber.id)
    return {
        "type": "field",
        "ruleTag": target,
        "inboundTag": [tag],
        "user": [user_key(tag, subscriber)],
        "outboundTag": target,
    }
