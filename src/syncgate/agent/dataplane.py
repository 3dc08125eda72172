from __future__ import annotations

import logging
import shlex
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

from syncgate.schemas import OnlineEndpoint, SubscriberRecord
from syncgate.settings import Settings

from .limiter import LimiterRegistry
from .metrics import observe_dataplane_op
from .system import run_command, write_spec_file

logger = logging.getLogger("syncgate.agent.dataplane")

_ALREADY_PRESENT = ("already exists", "existing tag found", "duplicate")
_ALREADY_ABSENT = ("not found", "doesn't exist", "does not exist", "no such")


class DataPlaneError(RuntimeError):
    pass


class DataPlane(Protocol):
    """Live object registry of the proxy server, keyed by tag.

    Adding an object that is present, or removing one that is missing, is a no-op.
    """

    limiter: LimiterRegistry

    def add_inbound(self, spec: dict[str, Any]) -> None: ...

    def remove_inbound(self, tag: str) -> None: ...

    def add_outbound(self, spec: dict[str, Any]) -> None: ...

    def remove_outbound(self, tag: str) -> None: ...

    def add_rule(self, spec: dict[str, Any]) -> None: ...

    def remove_rule(self, rule_tag: str) -> None: ...

    def add_user(self, inbound_tag: str, protocol: str, user: dict[str, Any]) -> None: ...

    def remove_user(self, inbound_tag: str, email: str) -> None: ...

    def query_traffic(self, keys: Iterable[str]) -> dict[str, tuple[int, int]]: ...

    def reset_traffic(self, keys: Iterable[str]) -> dict[str, tuple[int, int]]:
        """Zero the counters and return what they held when zeroed."""

    def online_endpoints(self, tag: str) -> list[OnlineEndpoint]: ...

    def add_limiter(self, tag: str, speed_limit: int, subscribers: Iterable[SubscriberRecord]) -> None: ...

    def update_limiter(self, tag: str, subscribers: Iterable[SubscriberRecord]) -> None: ...

    def drop_limiter_users(self, tag: str, keys: Iterable[str]) -> None: ...

    def remove_limiter(self, tag: str) -> None: ...


class _LimiterMixin:
    limiter: LimiterRegistry

    def add_limiter(self, tag: str, speed_limit: int, subscribers: Iterable[SubscriberRecord]) -> None:
        self.limiter.add(tag, speed_limit, subscribers)

    def update_limiter(self, tag: str, subscribers: Iterable[SubscriberRecord]) -> None:
        try:
            self.limiter.update(tag, subscribers)
        except KeyError as exc:
            raise DataPlaneError(str(exc)) from exc

    def drop_limiter_users(self, tag: str, keys: Iterable[str]) -> None:
        self.limiter.drop_users(tag, keys)

    def remove_limiter(self, tag: str) -> None:
        self.limiter.remove(tag)


class MemoryDataPlane(_LimiterMixin):
    """In-process registry used for dry-run mode and tests."""

    def __init__(self, limiter: LimiterRegistry | None = None) -> None:
        self.limiter = limiter or LimiterRegistry()
        self.inbounds: dict[str, dict[str, Any]] = {}
        self.outbounds: dict[str, dict[str, Any]] = {}
        self.rules: dict[str, dict[str, Any]] = {}
        self.users: dict[str, dict[str, dict[str, Any]]] = {}
        self.counters: dict[str, list[int]] = {}
        self.calls: list[tuple[str, str]] = []

    def _record(self, op: str, key: str) -> None:
        self.calls.append((op, key))
        observe_dataplane_op(op, "ok")

    def add_inbound(self, spec: dict[str, Any]) -> None:
        tag = spec["tag"]
        self._record("add_inbound", tag)
        if tag in self.inbounds:
            return
        self.inbounds[tag] = spec
        self.users.setdefault(tag, {})

    def remove_inbound(self, tag: str) -> None:
        self._record("remove_inbound", tag)
        self.inbounds.pop(tag, None)
        self.users.pop(tag, None)

    def add_outbound(self, spec: dict[str, Any]) -> None:
        self._record("add_outbound", spec["tag"])
        self.outbounds.setdefault(spec["tag"], spec)

    def remove_outbound(self, tag: str) -> None:
        self._record("remove_outbound", tag)
        self.outbounds.pop(tag, None)

    def add_rule(self, spec: dict[str, Any]) -> None:
        self._record("add_rule", spec["ruleTag"])
        self.rules.setdefault(spec["ruleTag"], spec)

    def remove_rule(self, rule_tag: str) -> None:
        self._record("remove_rule", rule_tag)
        self.rules.pop(rule_tag, None)

    def add_user(self, inbound_tag: str, protocol: str, user: dict[str, Any]) -> None:
        self._record("add_user", user["email"])
        if inbound_tag not in self.inbounds:
            raise DataPlaneError(f"no such inbound tag: {inbound_tag}")
        self.users[inbound_tag].setdefault(user["email"], dict(user, protocol=protocol))

    def remove_user(self, inbound_tag: str, email: str) -> None:
        self._record("remove_user", email)
        if inbound_tag not in self.inbounds:
            raise DataPlaneError(f"no such inbound tag: {inbound_tag}")
        self.users[inbound_tag].pop(email, None)

    def add_traffic(self, key: str, up: int, down: int) -> None:
        bucket = self.counters.setdefault(key, [0, 0])
        bucket[0] += int(up)
        bucket[1] += int(down)

    def query_traffic(self, keys: Iterable[str]) -> dict[str, tuple[int, int]]:
        out: dict[str, tuple[int, int]] = {}
        for key in keys:
            up, down = self.counters.get(key, (0, 0))
            out[key] = (up, down)
        return out

    def reset_traffic(self, keys: Iterable[str]) -> dict[str, tuple[int, int]]:
        taken: dict[str, tuple[int, int]] = {}
        for key in keys:
            self._record("reset_traffic", key)
            up, down = self.counters.pop(key, (0, 0))
            taken[key] = (up, down)
        return taken

    def online_endpoints(self, tag: str) -> list[OnlineEndpoint]:
        return self.limiter.online_endpoints(tag)

    def mutating_calls(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] != "reset_traffic"]


class XrayDataPlane(_LimiterMixin):
    """
    Live Xray instance.

    Users and counters go through the gRPC HandlerService/StatsService; inbound, outbound
    and routing-rule objects go through `xray api adi/ado/adrules` which accept the same
    JSON the topology builder produces.
    """

    def __init__(self, settings: Settings, limiter: LimiterRegistry | None = None, *, api: Any = None) -> None:
        if api is None:
            # Local import keeps dry-run mode free of the generated Xray protobuf stubs.
            from . import xray_api as api

        self._api = api
        self.settings = settings
        self.limiter = limiter or LimiterRegistry()
        self._spec_root = Path(settings.agent_data_root) / "specs"

    def _xray_api_cmd(self, subcommand: str, *args: str) -> str:
        parts = [self.settings.xray_bin, "api", subcommand, f"--server={self.settings.xray_api_server}", *args]
        return " ".join(shlex.quote(part) for part in parts)

    def _run(self, op: str, subcommand: str, *args: str, tolerate: tuple[str, ...]) -> None:
        ok, out = run_command(self._xray_api_cmd(subcommand, *args), dry_run=False)
        if ok:
            observe_dataplane_op(op, "ok")
            return
        lowered = (out or "").lower()
        if any(marker in lowered for marker in tolerate):
            observe_dataplane_op(op, "noop")
            return
        observe_dataplane_op(op, "error")
        details = (out or "").strip() or "no output"
        if len(details) > 400:
            details = details[:400].rstrip() + "..."
        raise DataPlaneError(f"xray api {subcommand} failed: {details}")

    def _spec_file(self, kind: str, tag: str, payload: dict[str, Any]) -> str:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "-" for ch in tag)
        return str(write_spec_file(self._spec_root, f"{kind}-{safe}.json", payload))

    def add_inbound(self, spec: dict[str, Any]) -> None:
        path = self._spec_file("inbound", spec["tag"], {"inbounds": [spec]})
        self._run("add_inbound", "adi", path, tolerate=_ALREADY_PRESENT)

    def remove_inbound(self, tag: str) -> None:
        self._run("remove_inbound", "rmi", tag, tolerate=_ALREADY_ABSENT)

    def add_outbound(self, spec: dict[str, Any]) -> None:
        path = self._spec_file("outbound", spec["tag"], {"outbounds": [spec]})
        self._run("add_outbound", "ado", path, tolerate=_ALREADY_PRESENT)

    def remove_outbound(self, tag: str) -> None:
        self._run("remove_outbound", "rmo", tag, tolerate=_ALREADY_ABSENT)

    def add_rule(self, spec: dict[str, Any]) -> None:
        path = self._spec_file("rule", spec["ruleTag"], {"routing": {"rules": [spec]}})
        self._run("add_rule", "adrules", "--append", path, tolerate=_ALREADY_PRESENT)

    def remove_rule(self, rule_tag: str) -> None:
        self._run("remove_rule", "rmrules", rule_tag, tolerate=_ALREADY_ABSENT)

    def add_user(self, inbound_tag: str, protocol: str, user: dict[str, Any]) -> None:
        try:
            self._api.add_user(self.settings, inbound_tag=inbound_tag, protocol=protocol, user=user)
        except self._api.XrayApiError as exc:
            observe_dataplane_op("add_user", "error")
            raise DataPlaneError(str(exc)) from exc
        observe_dataplane_op("add_user", "ok")

    def remove_user(self, inbound_tag: str, email: str) -> None:
        try:
            self._api.remove_user(self.settings, inbound_tag=inbound_tag, email=email)
        except self._api.XrayApiError as exc:
            observe_dataplane_op("remove_user", "error")
            raise DataPlaneError(str(exc)) from exc
        observe_dataplane_op("remove_user", "ok")

    def query_traffic(self, keys: Iterable[str]) -> dict[str, tuple[int, int]]:
        try:
            stats = self._api.query_user_traffic_bytes(self.settings, reset=False)
        except self._api.XrayApiError as exc:
            raise DataPlaneError(str(exc)) from exc
        out: dict[str, tuple[int, int]] = {}
        for key in keys:
            bucket = stats.get(key) or {}
            out[key] = (int(bucket.get("uplink", 0)), int(bucket.get("downlink", 0)))
        return out

    def reset_traffic(self, keys: Iterable[str]) -> dict[str, tuple[int, int]]:
        keys = list(keys)
        try:
            taken = self._api.reset_user_traffic(self.settings, emails=keys) or {}
        except self._api.XrayApiError as exc:
            raise DataPlaneError(str(exc)) from exc
        out: dict[str, tuple[int, int]] = {}
        for key in keys:
            bucket = taken.get(key) or {}
            out[key] = (int(bucket.get("uplink", 0)), int(bucket.get("downlink", 0)))
        return out

    def online_endpoints(self, tag: str) -> list[OnlineEndpoint]:
        for key in self.limiter.user_keys(tag):
            try:
                ips = self._api.query_online_ips(self.settings, email=key)
            except self._api.XrayApiError as exc:
                raise DataPlaneError(str(exc)) from exc
            if not self.limiter.record_online(tag, key, ips):
                logger.warning("ip_limit_exceeded tag=%s user=%s ips=%s", tag, key, len(ips))
        return self.limiter.online_endpoints(tag)


def build_dataplane(settings: Settings, limiter: LimiterRegistry | None = None) -> MemoryDataPlane | XrayDataPlane:
    if settings.agent_dry_run:
        return MemoryDataPlane(limiter)
    return XrayDataPlane(settings, limiter)
