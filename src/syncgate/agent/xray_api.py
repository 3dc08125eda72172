from __future__ import annotations

import grpc

from syncgate.settings import Settings

from xray.app.proxyman.command import command_pb2, command_pb2_grpc
from xray.app.stats.command import command_pb2 as stats_command_pb2
from xray.app.stats.command import command_pb2_grpc as stats_command_pb2_grpc
from xray.common.protocol import user_pb2
from xray.common.serial import typed_message_pb2
from xray.proxy.shadowsocks import config_pb2 as shadowsocks_pb2
from xray.proxy.shadowsocks_2022 import config_pb2 as shadowsocks_2022_pb2
from xray.proxy.trojan import config_pb2 as trojan_pb2
from xray.proxy.vless import account_pb2 as vless_pb2
from xray.proxy.vmess import account_pb2 as vmess_pb2

_SS_CIPHER_ALIASES = {
    "chacha20-ietf-poly1305": "CHACHA20_POLY1305",
    "xchacha20-ietf-poly1305": "XCHACHA20_POLY1305",
    "plain": "NONE",
}


class XrayApiError(RuntimeError):
    pass


class XrayApiInboundMissing(XrayApiError):
    pass


def _timeout(settings: Settings) -> float:
    return float(settings.xray_api_timeout_seconds or 3)


def _stub(settings: Settings) -> tuple[grpc.Channel, command_pb2_grpc.HandlerServiceStub]:
    channel = grpc.insecure_channel(settings.xray_api_server)
    return channel, command_pb2_grpc.HandlerServiceStub(channel)


def _stats_stub(settings: Settings) -> tuple[grpc.Channel, stats_command_pb2_grpc.StatsServiceStub]:
    channel = grpc.insecure_channel(settings.xray_api_server)
    return channel, stats_command_pb2_grpc.StatsServiceStub(channel)


def _typed(message, type_name: str) -> typed_message_pb2.TypedMessage:  # noqa: ANN001
    return typed_message_pb2.TypedMessage(type=type_name, value=message.SerializeToString())


def _ss_cipher_type(method: str) -> int:
    name = _SS_CIPHER_ALIASES.get(method.lower(), method.upper().replace("-", "_"))
    try:
        return shadowsocks_pb2.CipherType.Value(name)
    except ValueError as exc:
        raise XrayApiError(f"unsupported shadowsocks cipher: {method}") from exc


def build_account(protocol: str, user: dict) -> typed_message_pb2.TypedMessage:
    """Encode a credential dict (as built by the subscriber provisioner) into an Xray account."""
    if protocol == "vless":
        account = vless_pb2.Account(id=user["id"], flow=user.get("flow", ""), encryption="none")
        return _typed(account, "xray.proxy.vless.Account")
    if protocol == "vmess":
        return _typed(vmess_pb2.Account(id=user["id"]), "xray.proxy.vmess.Account")
    if protocol == "trojan":
        return _typed(trojan_pb2.Account(password=user["password"]), "xray.proxy.trojan.Account")
    if protocol == "shadowsocks":
        method = str(user.get("method") or "")
        if method.lower().startswith("2022-"):
            return _typed(shadowsocks_2022_pb2.Account(key=user["password"]), "xray.proxy.shadowsocks_2022.Account")
        account = shadowsocks_pb2.Account(password=user["password"], cipher_type=_ss_cipher_type(method))
        return _typed(account, "xray.proxy.shadowsocks.Account")
    raise XrayApiError(f"unsupported protocol for user accounts: {protocol}")


def _alter_inbound(settings: Settings, inbound_tag: str, op, type_name: str, *, noop: tuple[str, ...]) -> None:  # noqa: ANN001
    req = command_pb2.AlterInboundRequest(tag=inbound_tag, operation=_typed(op, type_name))
    channel, stub = _stub(settings)
    try:
        stub.AlterInbound(req, timeout=_timeout(settings))
    except grpc.RpcError as exc:  # pragma: no cover
        details = str(exc)
        if any(marker in details for marker in noop):
            return
        if "handler not found" in details or "failed to get handler" in details:
            raise XrayApiInboundMissing(f"inbound not found: {inbound_tag}") from exc
        raise XrayApiError(f"{type_name.rsplit('.', 1)[-1]} on {inbound_tag} failed: {exc}") from exc
    finally:
        channel.close()


def add_user(settings: Settings, *, inbound_tag: str, protocol: str, user: dict) -> None:
    email = str(user.get("email") or "").strip()
    if not email:
        raise ValueError("email is required to add a user")
    account = user_pb2.User(level=0, email=email, account=build_account(protocol, user))
    _alter_inbound(
        settings,
        inbound_tag,
        command_pb2.AddUserOperation(user=account),
        "xray.app.proxyman.command.AddUserOperation",
        noop=("already exists",),
    )


def remove_user(settings: Settings, *, inbound_tag: str, email: str) -> None:
    if not str(email or "").strip():
        raise ValueError("email is required to remove a user")
    _alter_inbound(
        settings,
        inbound_tag,
        command_pb2.RemoveUserOperation(email=email.strip()),
        "xray.app.proxyman.command.RemoveUserOperation",
        noop=("user not found", "doesn't exist"),
    )


def query_user_traffic_bytes(settings: Settings, *, reset: bool = False) -> dict[str, dict[str, int]]:
    """
    Per-user traffic counters keyed by the user key Xray reports as email.

    Stat names look like `user>>>{email}>>>traffic>>>{uplink|downlink}`; the query pattern
    is a prefix match, not a glob.
    """
    channel, stub = _stats_stub(settings)
    try:
        resp = stub.QueryStats(
            stats_command_pb2.QueryStatsRequest(pattern="user>>>", reset=bool(reset)),
            timeout=_timeout(settings),
        )
    except grpc.RpcError as exc:  # pragma: no cover
        raise XrayApiError(f"QueryStats failed: {exc}") from exc
    finally:
        channel.close()

    counters: dict[str, dict[str, int]] = {}
    for stat in resp.stat:
        kind, _, rest = str(stat.name or "").partition(">>>")
        email, _, tail = rest.partition(">>>traffic>>>")
        if kind != "user" or not email or tail not in ("uplink", "downlink"):
            continue
        counters.setdefault(email, {"uplink": 0, "downlink": 0})[tail] = int(stat.value or 0)
    return counters


def reset_user_traffic(settings: Settings, *, emails: list[str]) -> dict[str, dict[str, int]]:
    """Zero each user's counters and return the values they held at the moment of reset."""
    channel, stub = _stats_stub(settings)
    taken: dict[str, dict[str, int]] = {}
    try:
        for email in emails:
            bucket = taken.setdefault(email, {"uplink": 0, "downlink": 0})
            for direction in ("uplink", "downlink"):
                name = f"user>>>{email}>>>traffic>>>{direction}"
                try:
                    resp = stub.GetStats(
                        stats_command_pb2.GetStatsRequest(name=name, reset=True), timeout=_timeout(settings)
                    )
                except grpc.RpcError as exc:  # pragma: no cover
                    if "not found" in str(exc):
                        continue
                    raise XrayApiError(f"GetStats reset failed for {name}: {exc}") from exc
                bucket[direction] = int(resp.stat.value or 0)
    finally:
        channel.close()
    return taken


def query_online_ips(settings: Settings, *, email: str) -> list[str]:
    channel, stub = _stats_stub(settings)
    try:
        resp = stub.GetStatsOnlineIpList(
            stats_command_pb2.GetStatsRequest(name=f"user>>>{email}>>>online", reset=False),
            timeout=_timeout(settings),
        )
    except grpc.RpcError as exc:  # pragma: no cover
        if "not found" in str(exc):
            return []
        raise XrayApiError(f"GetStatsOnlineIpList failed for {email}: {exc}") from exc
    finally:
        channel.close()
    return sorted(str(ip) for ip in resp.ips.keys() if str(ip).strip())
