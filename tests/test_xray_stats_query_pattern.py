from __future__ import annotations

import pytest

# Generated Xray protobuf stubs are only present on hosts built against Xray.
pytest.importorskip("xray.app.stats.command.command_pb2")


def _stats_env(monkeypatch, stat_rows: list):  # noqa: ANN001, ANN202
    from syncgate.agent import xray_api
    from syncgate.settings import Settings

    class _DummyChannel:
        def close(self) -> None:
            pass

    class _Row:
        def __init__(self, name: str, value: int) -> None:
            self.name = name
            self.value = value

    class _DummyResp:
        stat = [_Row(name, value) for name, value in stat_rows]

    class _DummyStub:
        last_req = None
        last_timeout = None

        def QueryStats(self, req, timeout=None):  # noqa: ANN001, N802
            self.last_req = req
            self.last_timeout = timeout
            return _DummyResp()

    stub = _DummyStub()
    monkeypatch.setattr(xray_api, "_stats_stub", lambda _settings: (_DummyChannel(), stub))
    return xray_api, Settings(), stub


def test_xray_stats_query_uses_prefix_pattern(monkeypatch) -> None:
    """
    Xray QueryStatsRequest.pattern is a prefix, not a glob:
      - good: "user>>>"
      - bad:  "user>>>*>>>traffic>>>*"
    """
    xray_api, settings, stub = _stats_env(monkeypatch, [])

    xray_api.query_user_traffic_bytes(settings, reset=False)

    assert stub.last_req is not None
    assert stub.last_req.pattern == "user>>>"
    assert stub.last_req.reset is False


def test_xray_stats_keys_by_user_key(monkeypatch) -> None:
    xray_api, settings, _ = _stats_env(
        monkeypatch,
        [
            ("user>>>vless_443_1|a@example.com|1>>>traffic>>>uplink", 10),
            ("user>>>vless_443_1|a@example.com|1>>>traffic>>>downlink", 20),
            ("inbound>>>vless_443_1>>>traffic>>>uplink", 99),
        ],
    )

    assert xray_api.query_user_traffic_bytes(settings) == {
        "vless_443_1|a@example.com|1": {"uplink": 10, "downlink": 20}
    }
