from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from syncgate.schemas import NodeDescriptor, RelayNodeDescriptor, SubscriberRecord

from .dataplane import DataPlane, DataPlaneError
from .topology import (
    KeyDerivationError,
    UnsupportedProtocolError,
    blackhole_tag,
    build_blackhole_outbound,
    build_blocking_rule,
    build_default_rule,
    build_inbound,
    build_outbound,
    build_relay_outbound,
    build_relay_rule,
    default_rule_tag,
    derive_relay_key,
    relay_subscriber_tag,
)

_default_log = logging.getLogger("syncgate.agent.lifecycle")


@dataclass(frozen=True)
class NodePlan:
    tag: str
    inbound: dict[str, Any]
    outbound: dict[str, Any]
    default_rule: dict[str, Any] | None
    blocking_outbound: dict[str, Any] | None
    blocking_rule: dict[str, Any] | None


class NodeLifecycleManager:
    """
    Applies and removes whole node topologies on the data plane.

    Per tag a node is absent, active, or active with a relay sub-topology. Every object
    of a topology is built before the first live call, so a bad descriptor never leaves a
    half-applied tag behind.
    """

    def __init__(
        self,
        dataplane: DataPlane,
        *,
        cert_dir: str = "",
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.dataplane = dataplane
        self.cert_dir = cert_dir
        self.log = log or _default_log

    def plan_node(self, node: NodeDescriptor, tag: str) -> NodePlan:
        """Build every object of the node topology without touching the data plane."""
        blocking_rule = build_blocking_rule(node, tag)
        return NodePlan(
            tag=tag,
            inbound=build_inbound(node, tag, cert_dir=self.cert_dir),
            outbound=build_outbound(tag),
            default_rule=build_default_rule(node, tag),
            blocking_outbound=build_blackhole_outbound(tag) if blocking_rule is not None else None,
            blocking_rule=blocking_rule,
        )

    def add_node(self, node: NodeDescriptor, tag: str, *, plan: NodePlan | None = None) -> None:
        plan = plan or self.plan_node(node, tag)
        if plan.blocking_rule is not None and plan.blocking_outbound is not None:
            self.dataplane.add_outbound(plan.blocking_outbound)
            self.dataplane.add_rule(plan.blocking_rule)
        self.dataplane.add_inbound(plan.inbound)
        self.dataplane.add_outbound(plan.outbound)
        if plan.default_rule is not None:
            self.dataplane.add_rule(plan.default_rule)
        self.log.info(
            "node_added tag=%s blocking=%s default_rule=%s",
            tag,
            plan.blocking_rule is not None,
            plan.default_rule is not None,
        )

    def remove_node(self, tag: str) -> None:
        """Best-effort teardown; every step runs, the first failure is re-raised at the end."""
        steps: list[tuple[str, Callable[[], None]]] = [
            ("inbound", lambda: self.dataplane.remove_inbound(tag)),
            ("outbound", lambda: self.dataplane.remove_outbound(tag)),
            ("default_rule", lambda: self.dataplane.remove_rule(default_rule_tag(tag))),
            ("blocking_rule", lambda: self.dataplane.remove_rule(blackhole_tag(tag))),
            ("blocking_outbound", lambda: self.dataplane.remove_outbound(blackhole_tag(tag))),
            ("limiter", lambda: self.dataplane.remove_limiter(tag)),
        ]
        self._run_all(steps, event="node_remove_failed", tag=tag)
        self.log.info("node_removed tag=%s", tag)

    def add_relay(
        self,
        relay: RelayNodeDescriptor,
        relay_tag: str,
        tag: str,
        subscribers: Sequence[SubscriberRecord],
    ) -> int:
        if relay.node_type not in {"vless", "vmess", "trojan", "shadowsocks"}:
            raise UnsupportedProtocolError(f"relay outbound server with type {relay.node_type} is not supported")

        planned: list[tuple[dict[str, Any], dict[str, Any]]] = []
        for row in subscribers:
            try:
                key = derive_relay_key(relay.cipher, relay.server_key, row.passwd)
            except KeyDerivationError as exc:
                self.log.warning("relay_subscriber_skipped id=%s relay_tag=%s reason=%s", row.id, relay_tag, exc)
                continue
            planned.append((build_relay_outbound(relay, relay_tag, row, key), build_relay_rule(tag, relay_tag, row)))

        for outbound, rule in planned:
            self.dataplane.add_outbound(outbound)
            self.dataplane.add_rule(rule)
        self.log.info("relay_added relay_tag=%s tag=%s subscribers=%s", relay_tag, tag, len(planned))
        return len(planned)

    def remove_relay(self, relay_tag: str, subscribers: Sequence[SubscriberRecord]) -> None:
        # Rules go first so no rule ever points at a missing outbound.
        steps: list[tuple[str, Callable[[], None]]] = []
        for row in subscribers:
            target = relay_subscriber_tag(relay_tag, row.id)
            steps.append((f"rule {target}", lambda target=target: self.dataplane.remove_rule(target)))
        for row in subscribers:
            target = relay_subscriber_tag(relay_tag, row.id)
            steps.append((f"outbound {target}", lambda target=target: self.dataplane.remove_outbound(target)))
        self._run_all(steps, event="relay_remove_failed", tag=relay_tag)
        self.log.info("relay_removed relay_tag=%s subscribers=%s", relay_tag, len(subscribers))

    def add_limiter(self, tag: str, node: NodeDescriptor, subscribers: Sequence[SubscriberRecord]) -> None:
        self.dataplane.add_limiter(tag, node.speed_limit, subscribers)

    def update_limiter(self, tag: str, subscribers: Sequence[SubscriberRecord]) -> None:
        if subscribers:
            self.dataplane.update_limiter(tag, subscribers)

    def _run_all(self, steps: list[tuple[str, Callable[[], None]]], *, event: str, tag: str) -> None:
        first_error: DataPlaneError | None = None
        for name, step in steps:
            try:
                step()
            except DataPlaneError as exc:
                self.log.warning("%s tag=%s step=%s error=%s", event, tag, name, exc)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
