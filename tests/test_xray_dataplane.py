import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from syncgate.agent import dataplane
from syncgate.agent.dataplane import DataPlaneError, MemoryDataPlane, XrayDataPlane, build_dataplane
from syncgate.agent.limiter import LimiterRegistry
from syncgate.schemas import SubscriberRecord
from syncgate.settings import Settings


class _FakeApiError(RuntimeError):
    pass


def _fake_api(**overrides):  # noqa: ANN003, ANN202
    calls: list[tuple] = []

    def add_user(settings, *, inbound_tag, protocol, user):  # noqa: ANN001
        calls.append(("add_user", inbound_tag, protocol, user["email"]))

    def remove_user(settings, *, inbound_tag, email):  # noqa: ANN001
        calls.append(("remove_user", inbound_tag, email))

    def query_user_traffic_bytes(settings, *, reset=False):  # noqa: ANN001
        return {"t|a|1": {"uplink": 5, "downlink": 7}}

    def reset_user_traffic(settings, *, emails):  # noqa: ANN001
        calls.append(("reset", tuple(emails)))
        return {email: {"uplink": 6, "downlink": 9} for email in emails}

    def query_online_ips(settings, *, email):  # noqa: ANN001
        return ["10.0.0.1", "10.0.0.2"]

    api = SimpleNamespace(
        XrayApiError=_FakeApiError,
        add_user=add_user,
        remove_user=remove_user,
        query_user_traffic_bytes=query_user_traffic_bytes,
        reset_user_traffic=reset_user_traffic,
        query_online_ips=query_online_ips,
        calls=calls,
    )
    for name, fn in overrides.items():
        setattr(api, name, fn)
    return api


def _settings(tmp_path: Path) -> Settings:
    return Settings(agent_data_root=str(tmp_path), agent_dry_run=False, xray_api_server="127.0.0.1:10085")


def test_add_inbound_writes_spec_and_calls_xray_api(monkeypatch, tmp_path: Path) -> None:
    commands: list[str] = []

    def _run(cmd: str, dry_run: bool):  # noqa: ANN202
        commands.append(cmd)
        return True, ""

    monkeypatch.setattr(dataplane, "run_command", _run)
    plane = XrayDataPlane(_settings(tmp_path), api=_fake_api())

    plane.add_inbound({"tag": "vless_443_1", "protocol": "vless"})
    plane.add_rule({"ruleTag": "vless_443_1_default", "inboundTag": ["vless_443_1"], "outboundTag": "vless_443_1"})
    plane.remove_outbound("vless_443_1")

    spec_file = tmp_path / "specs" / "inbound-vless_443_1.json"
    assert json.loads(spec_file.read_text(encoding="utf-8")) == {"inbounds": [{"tag": "vless_443_1", "protocol": "vless"}]}
    assert commands[0] == f"xray api adi --server=127.0.0.1:10085 {spec_file}"
    assert commands[1].startswith("xray api adrules --server=127.0.0.1:10085 --append ")
    assert commands[2] == "xray api rmo --server=127.0.0.1:10085 vless_443_1"


def test_add_existing_and_remove_missing_are_noops(monkeypatch, tmp_path: Path) -> None:
    outputs = iter([(False, "failed to add: existing tag found: x"), (False, "handler not found: x")])
    monkeypatch.setattr(dataplane, "run_command", lambda cmd, dry_run: next(outputs))
    plane = XrayDataPlane(_settings(tmp_path), api=_fake_api())

    plane.add_outbound({"tag": "x", "protocol": "freedom"})
    plane.remove_inbound("x")


def test_other_cli_failures_raise(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(dataplane, "run_command", lambda cmd, dry_run: (False, "connection refused"))
    plane = XrayDataPlane(_settings(tmp_path), api=_fake_api())

    with pytest.raises(DataPlaneError, match="connection refused"):
        plane.remove_rule("x_default")


def test_grpc_errors_become_dataplane_errors(tmp_path: Path) -> None:
    def _boom(settings, *, inbound_tag, protocol, user):  # noqa: ANN001
        raise _FakeApiError("inbound not found")

    plane = XrayDataPlane(_settings(tmp_path), api=_fake_api(add_user=_boom))

    with pytest.raises(DataPlaneError, match="inbound not found"):
        plane.add_user("t", "vless", {"id": "p", "email": "t|a|1"})


def test_traffic_and_online_queries(tmp_path: Path) -> None:
    api = _fake_api()
    limiter = LimiterRegistry()
    limiter.add("t", 0, [SubscriberRecord(id=1, email="a", passwd="p", ip_limit=1)])
    plane = XrayDataPlane(_settings(tmp_path), limiter, api=api)

    assert plane.query_traffic(["t|a|1", "t|b|2"]) == {"t|a|1": (5, 7), "t|b|2": (0, 0)}
    assert plane.reset_traffic(["t|a|1"]) == {"t|a|1": (6, 9)}
    assert ("reset", ("t|a|1",)) in api.calls
    assert [(row.id, row.ip) for row in plane.online_endpoints("t")] == [(1, "10.0.0.1"), (1, "10.0.0.2")]


def test_build_dataplane_uses_memory_plane_in_dry_run(tmp_path: Path) -> None:
    assert isinstance(build_dataplane(Settings(agent_data_root=str(tmp_path), agent_dry_run=True)), MemoryDataPlane)
