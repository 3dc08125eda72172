from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class BlockingRules(_Frozen):
    # Comma separated port tokens, e.g. "53,443,1000-2000". "" and "0" mean "no port rule".
    port: str = ""
    domains: tuple[str, ...] = ()
    ips: tuple[str, ...] = ()
    protocols: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        has_port = bool(self.port.strip()) and self.port.strip() != "0"
        return not (has_port or self.domains or self.ips or self.protocols)


class TransportSettings(_Frozen):
    network: str = "tcp"
    path: str = ""
    host: str = ""
    service_name: str = ""
    header_type: str = "none"


class TlsSettings(_Frozen):
    server_name: str = ""
    cert_mode: str = "none"
    cert_domain: str = ""
    cert_file: str = ""
    key_file: str = ""
    alpn: tuple[str, ...] = ()
    # REALITY only.
    dest: str = ""
    private_key: str = ""
    short_ids: tuple[str, ...] = ()
    server_names: tuple[str, ...] = ()


class _NodeBase(_Frozen):
    node_id: int
    listening_port: int
    listen_ip: str = "0.0.0.0"
    security: str = "none"
    transport: TransportSettings = Field(default_factory=TransportSettings)
    tls_settings: TlsSettings = Field(default_factory=TlsSettings)
    # Bytes per second, 0 means unlimited.
    speed_limit: int = 0
    relay_type: int = 0
    relay_node_id: int = 0
    blocking_rules: BlockingRules = Field(default_factory=BlockingRules)
    update_interval: int = 60
    sniffing: bool = True

    @property
    def is_relay_head(self) -> bool:
        return self.relay_type == 1 and self.relay_node_id > 0

    @property
    def wants_auto_cert(self) -> bool:
        return self.security == "tls" and self.tls_settings.cert_mode in {"http", "dns"}


class VlessNode(_NodeBase):
    node_type: Literal["vless"] = "vless"
    flow: str = ""


class VmessNode(_NodeBase):
    node_type: Literal["vmess"] = "vmess"


class TrojanNode(_NodeBase):
    node_type: Literal["trojan"] = "trojan"


class ShadowsocksNode(_NodeBase):
    node_type: Literal["shadowsocks"] = "shadowsocks"
    cipher: str = "aes-128-gcm"
    server_key: str = ""


class ShadowsocksPluginNode(_NodeBase):
    node_type: Literal["Shadowsocks-Plugin"] = "Shadowsocks-Plugin"
    cipher: str = "aes-128-gcm"
    server_key: str = ""


NodeDescriptor = Annotated[
    Union[VlessNode, VmessNode, TrojanNode, ShadowsocksNode, ShadowsocksPluginNode],
    Field(discriminator="node_type"),
]


NODE_ADAPTER: TypeAdapter = TypeAdapter(NodeDescriptor)


class RelayNodeDescriptor(_Frozen):
    """Downstream hop used as per-subscriber egress when the node is a relay head."""

    node_id: int
    node_type: str
    address: str
    listening_port: int
    security: str = "none"
    transport: TransportSettings = Field(default_factory=TransportSettings)
    tls_settings: TlsSettings = Field(default_factory=TlsSettings)
    cipher: str = ""
    server_key: str = ""
    flow: str = ""
    # REALITY client side.
    public_key: str = ""
    short_id: str = ""


class SubscriberRecord(_Frozen):
    id: int
    email: str
    passwd: str
    ip_limit: int = 0
    # Bytes per second, 0 means unlimited.
    speed_limit: int = 0


class UsageRecord(_Frozen):
    id: int
    upload: int
    download: int


class OnlineEndpoint(_Frozen):
    id: int
    ip: str


class NodeHealth(BaseModel):
    node_id: int
    phase: str
    tag: str | None = None
    relay_tag: str | None = None
    subscribers: int = 0
    last_tick_ok: bool | None = None
    last_error: str | None = None


class AgentHealthResponse(BaseModel):
    nodes: list[NodeHealth]
    # None in dry-run mode, where no Xray process is expected.
    xray_ok: bool | None = None
    xray_details: str | None = None
    overall_ok: bool
