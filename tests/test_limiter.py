import pytest

from syncgate.agent.dataplane import DataPlaneError, MemoryDataPlane
from syncgate.agent.limiter import LimiterRegistry
from syncgate.schemas import OnlineEndpoint, SubscriberRecord

TAG = "vless_443_1"


def _sub(sid: int, *, email: str | None = None, speed: int = 0, ips: int = 0) -> SubscriberRecord:
    return SubscriberRecord(id=sid, email=email or f"u{sid}", passwd=f"p{sid}", speed_limit=speed, ip_limit=ips)


def test_effective_speed_limit_is_the_stricter_of_node_and_user() -> None:
    reg = LimiterRegistry()
    reg.add(TAG, 1_000, [_sub(1, speed=500), _sub(2), _sub(3, speed=5_000)])

    assert reg.speed_limit_for(TAG, f"{TAG}|u1|1") == 500
    assert reg.speed_limit_for(TAG, f"{TAG}|u2|2") == 1_000
    assert reg.speed_limit_for(TAG, f"{TAG}|u3|3") == 1_000
    assert reg.speed_limit_for("missing", f"{TAG}|u1|1") == 0


def test_update_replaces_entry_when_email_changes() -> None:
    reg = LimiterRegistry()
    reg.add(TAG, 0, [_sub(1)])

    reg.update(TAG, [_sub(1, email="renamed", speed=10)])

    assert reg.user_keys(TAG) == [f"{TAG}|renamed|1"]
    assert reg.speed_limit_for(TAG, f"{TAG}|renamed|1") == 10


def test_update_unknown_tag_raises() -> None:
    with pytest.raises(KeyError):
        LimiterRegistry().update(TAG, [_sub(1)])


def test_record_online_enforces_ip_limit_and_reports_endpoints() -> None:
    reg = LimiterRegistry()
    reg.add(TAG, 0, [_sub(1, ips=1), _sub(2)])

    assert reg.record_online(TAG, f"{TAG}|u1|1", ["1.1.1.1", "2.2.2.2"]) is False
    assert reg.record_online(TAG, f"{TAG}|u2|2", ["3.3.3.3"]) is True

    assert reg.online_endpoints(TAG) == [
        OnlineEndpoint(id=1, ip="1.1.1.1"),
        OnlineEndpoint(id=1, ip="2.2.2.2"),
        OnlineEndpoint(id=2, ip="3.3.3.3"),
    ]

    reg.record_online(TAG, f"{TAG}|u2|2", [])
    assert [row.id for row in reg.online_endpoints(TAG)] == [1, 1]


def test_remove_drops_tag() -> None:
    reg = LimiterRegistry()
    reg.add(TAG, 0, [_sub(1)])
    reg.remove(TAG)
    reg.remove(TAG)
    assert reg.has(TAG) is False
    assert reg.tags() == []


def test_memory_dataplane_is_idempotent_and_checks_inbound() -> None:
    plane = MemoryDataPlane()
    plane.add_inbound({"tag": TAG, "protocol": "vless"})
    plane.add_inbound({"tag": TAG, "protocol": "vless"})
    plane.add_user(TAG, "vless", {"id": "p1", "email": f"{TAG}|u1|1"})
    plane.remove_outbound("never-added")

    assert list(plane.inbounds) == [TAG]
    assert list(plane.users[TAG]) == [f"{TAG}|u1|1"]
    with pytest.raises(DataPlaneError):
        plane.add_user("missing", "vless", {"id": "p", "email": "x"})


def test_memory_dataplane_update_limiter_without_limiter_fails() -> None:
    plane = MemoryDataPlane()
    with pytest.raises(DataPlaneError):
        plane.update_limiter(TAG, [_sub(1)])


def test_memory_dataplane_traffic_reset_is_not_a_mutating_call() -> None:
    plane = MemoryDataPlane()
    plane.add_traffic("k", 10, 20)
    assert plane.query_traffic(["k", "other"]) == {"k": (10, 20), "other": (0, 0)}
    assert plane.reset_traffic(["k"]) == {"k": (10, 20)}
    assert plane.query_traffic(["k"]) == {"k": (0, 0)}
    assert plane.mutating_calls() == []
