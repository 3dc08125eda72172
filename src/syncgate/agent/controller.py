from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace

from syncgate.enums import ControllerPhase
from syncgate.observability import NodeLogAdapter, node_log_prefix
from syncgate.panel.client import NOT_MODIFIED, PanelClient, PanelError
from syncgate.schemas import NodeDescriptor, NodeHealth, RelayNodeDescriptor, SubscriberRecord

from .certs import CertError, CertRenewer
from .dataplane import DataPlane, DataPlaneError
from .diff import DuplicateSubscriberError, compare
from .lifecycle import NodeLifecycleManager, NodePlan
from .metrics import observe_tick, set_subscribers
from .subscribers import SubscriberProvisioner, user_keys
from .tasks import PeriodicTask, TaskManager
from .topology import TopologyError, node_tag, relay_tag

logger = logging.getLogger("syncgate.agent.controller")

CERT_INTERVAL_FACTOR = 60

_TICK_ERRORS = (TopologyError, DataPlaneError, PanelError, DuplicateSubscriberError)


class ControllerError(RuntimeError):
    pass


@dataclass(frozen=True)
class ControllerState:
    node: NodeDescriptor
    subscribers: tuple[SubscriberRecord, ...]
    tag: str
    relay: RelayNodeDescriptor | None = None
    relay_tag: str | None = None

    @property
    def relay_active(self) -> bool:
        return self.relay_tag is not None


class Controller:
    """
    Keeps one panel node identity applied on the local data plane.

    The last applied view is an immutable `ControllerState`; each completed reconcile step
    swaps in a new value, so readers (health, reporting) never see a half-updated view.
    """

    def __init__(
        self,
        panel: PanelClient,
        dataplane: DataPlane,
        *,
        restart: Callable[[], None],
        cert_renewer: CertRenewer | None = None,
        cert_dir: str = "",
    ) -> None:
        self.panel = panel
        self.dataplane = dataplane
        self.restart = restart
        self.cert_renewer = cert_renewer
        self.log = NodeLogAdapter(logger, self._log_prefix)
        self.lifecycle = NodeLifecycleManager(dataplane, cert_dir=cert_dir, log=self.log)
        self.provisioner = SubscriberProvisioner(dataplane, panel, log=self.log)
        self.tasks = TaskManager()
        self.phase = ControllerPhase.STARTING
        self.last_tick_ok: bool | None = None
        self.last_error: str | None = None
        self._state: ControllerState | None = None

    @property
    def node_id(self) -> int:
        return self.panel.node_id

    @property
    def state(self) -> ControllerState | None:
        return self._state

    def _log_prefix(self) -> str:
        node_type = self._state.node.node_type if self._state is not None else "pending"
        return node_log_prefix(self.panel.api_host, node_type, self.panel.node_id)

    def _interval(self) -> float:
        if self._state is None:
            return 60.0
        return float(self._state.node.update_interval)

    def _commit(self, state: ControllerState) -> ControllerState:
        self._state = state
        set_subscribers(self.node_id, len(state.subscribers))
        return state

    async def start(self) -> None:
        """Initial fetch and full apply. Any failure propagates and schedules nothing."""
        node = await self.panel.fetch_node()
        if node is NOT_MODIFIED:
            raise ControllerError("initial node info fetch returned not-modified")
        subscribers = await self.panel.fetch_subscribers()
        if subscribers is NOT_MODIFIED:
            raise ControllerError("initial subscription list fetch returned not-modified")
        # compare() rejects duplicate ids and yields a stable ordering.
        _, ordered, _ = compare(None, subscribers)

        tag = node_tag(node)
        state = ControllerState(node=node, subscribers=tuple(ordered), tag=tag)
        self._state = state
        plan = self.lifecycle.plan_node(node, tag)

        if node.is_relay_head:
            relay = await self.panel.fetch_relay_node()
            state = self._commit(replace(state, relay=relay, relay_tag=relay_tag(relay)))
            await asyncio.to_thread(self.lifecycle.add_relay, relay, relay_tag(relay), tag, state.subscribers)

        await asyncio.to_thread(self._install_node, node, tag, plan, state.subscribers)
        self._commit(state)

        self.tasks.add(PeriodicTask("node", self._interval, self.reconcile_once))
        self.tasks.add(PeriodicTask("subscriptions", self._interval, self.report_once))
        if node.wants_auto_cert and self.cert_renewer is not None:
            self.tasks.add(
                PeriodicTask("cert renew", lambda: self._interval() * CERT_INTERVAL_FACTOR, self.renew_cert_once)
            )
        self.tasks.start_all()
        self.phase = ControllerPhase.STEADY
        self.log.info("controller_started tag=%s subscribers=%s tasks=%s", tag, len(ordered), self.tasks.names())

    async def reconcile_once(self) -> None:
        state = self._state
        if state is None:
            raise ControllerError("controller is not started")

        try:
            fetched_node = await self.panel.fetch_node()
            fetched_subs = await self.panel.fetch_subscribers()
        except PanelError as exc:
            # The other resource may already have stored a fresh ETag for a change this
            # tick never applied.
            self.panel.invalidate()
            self.log.warning("fetch_failed error=%s", exc)
            observe_tick(self.node_id, "fetch_error")
            return

        node_changed = fetched_node is not NOT_MODIFIED
        subs_changed = fetched_subs is not NOT_MODIFIED
        if not node_changed and not subs_changed:
            observe_tick(self.node_id, "unchanged")
            self._mark_ok()
            return

        new_node = fetched_node if node_changed else state.node
        try:
            if subs_changed:
                _, ordered, _ = compare(None, fetched_subs)
                new_subs = tuple(ordered)
            else:
                new_subs = state.subscribers
            await self._apply(state, new_node, new_subs, node_changed=node_changed, subs_changed=subs_changed)
        except _TICK_ERRORS as exc:
            self.phase = ControllerPhase.DEGRADED
            self.last_tick_ok = False
            self.last_error = str(exc)
            # A tick that stopped midway must be dirty again next time.
            self.panel.invalidate()
            self.log.error("reconcile_failed error=%s", exc)
            observe_tick(self.node_id, "error")
            return

        observe_tick(self.node_id, "applied")
        self._mark_ok()

    async def _apply(
        self,
        state: ControllerState,
        new_node: NodeDescriptor,
        new_subs: Sequence[SubscriberRecord],
        *,
        node_changed: bool,
        subs_changed: bool,
    ) -> None:
        structural = node_changed and new_node != state.node
        new_tag = node_tag(new_node) if structural else state.tag
        # Built up front so an unbuildable descriptor aborts before any teardown.
        plan = self.lifecycle.plan_node(new_node, new_tag) if structural else None

        # Data-plane calls block on gRPC and the xray CLI, so they run in a worker thread.
        # Each one is awaited, which keeps this task serial.
        if state.relay_active:
            await asyncio.to_thread(self.lifecycle.remove_relay, state.relay_tag, state.subscribers)
            state = self._commit(replace(state, relay=None, relay_tag=None))

        if new_node.is_relay_head:
            try:
                relay = await self.panel.fetch_relay_node()
            except PanelError as exc:
                self.log.error("relay_fetch_failed error=%s; requesting restart", exc)
                self.restart()
                raise
            state = self._commit(replace(state, relay=relay, relay_tag=relay_tag(relay)))
            await asyncio.to_thread(self.lifecycle.add_relay, relay, relay_tag(relay), new_tag, new_subs)

        if structural:
            await asyncio.to_thread(self._replace_node, state.tag, new_node, new_tag, plan, new_subs)
            state = replace(state, node=new_node, tag=new_tag)
        elif subs_changed:
            await asyncio.to_thread(self._apply_subscriber_delta, state, new_subs)

        self._commit(replace(state, subscribers=tuple(new_subs)))

    def _install_node(
        self, node: NodeDescriptor, tag: str, plan: NodePlan | None, subscribers: Sequence[SubscriberRecord]
    ) -> None:
        self.lifecycle.add_node(node, tag, plan=plan)
        self.provisioner.add_subscribers(tag, node, subscribers)
        self.lifecycle.add_limiter(tag, node, subscribers)

    def _replace_node(
        self,
        old_tag: str,
        node: NodeDescriptor,
        tag: str,
        plan: NodePlan | None,
        subscribers: Sequence[SubscriberRecord],
    ) -> None:
        try:
            self.lifecycle.remove_node(old_tag)
        except DataPlaneError as exc:
            self.log.warning("old_node_remove_incomplete tag=%s error=%s", old_tag, exc)
        self._install_node(node, tag, plan, subscribers)
        self.log.info("node_replaced old_tag=%s new_tag=%s", old_tag, tag)

    def _apply_subscriber_delta(self, state: ControllerState, new_subs: Sequence[SubscriberRecord]) -> None:
        deleted, added, modified = compare(state.subscribers, new_subs)
        tag = state.tag
        if deleted:
            keys = user_keys(tag, deleted)
            self.dataplane.drop_limiter_users(tag, keys)
            self.provisioner.remove_subscribers(keys, tag)
        if added:
            try:
                self.provisioner.add_subscribers(tag, state.node, added)
                self.lifecycle.update_limiter(tag, added)
            except DataPlaneError as exc:
                self.log.error("subscribers_add_failed count=%s error=%s", len(added), exc)
        if modified:
            try:
                self.lifecycle.update_limiter(tag, modified)
            except DataPlaneError as exc:
                self.log.error("limiter_update_failed count=%s error=%s", len(modified), exc)
        self.log.info("subscribers_synced deleted=%s added=%s modified=%s", len(deleted), len(added), len(modified))

    def _mark_ok(self) -> None:
        self.phase = ControllerPhase.STEADY
        self.last_tick_ok = True
        self.last_error = None

    async def report_once(self) -> None:
        state = self._state
        if state is None:
            return
        await self.provisioner.monitor(state.tag, state.subscribers)

    async def renew_cert_once(self) -> None:
        state = self._state
        if state is None or self.cert_renewer is None or not state.node.wants_auto_cert:
            return
        tls = state.node.tls_settings
        domain = tls.cert_domain or tls.server_name
        try:
            result = await asyncio.to_thread(self.cert_renewer.renew, tls.cert_mode, domain)
        except CertError as exc:
            self.log.warning("cert_renew_failed domain=%s error=%s", domain, exc)
            return
        if result.renewed:
            self.log.info("cert_renewed domain=%s cert=%s", domain, result.cert_path)

    async def close(self) -> None:
        """Stop scheduled tasks. Applied topology is left in place."""
        await self.tasks.close_all()
        self.phase = ControllerPhase.CLOSED
        self.log.info("controller_closed")

    def teardown(self) -> None:
        """Best-effort removal of everything the last applied state put on the data plane."""
        state = self._state
        if state is None:
            return
        if state.relay_active:
            try:
                self.lifecycle.remove_relay(state.relay_tag, state.subscribers)
            except DataPlaneError as exc:
                self.log.warning("relay_teardown_incomplete relay_tag=%s error=%s", state.relay_tag, exc)
        try:
            self.lifecycle.remove_node(state.tag)
        except DataPlaneError as exc:
            self.log.warning("node_teardown_incomplete tag=%s error=%s", state.tag, exc)
        self._state = None

    def health(self) -> NodeHealth:
        state = self._state
        return NodeHealth(
            node_id=self.node_id,
            phase=self.phase.value,
            tag=state.tag if state else None,
            relay_tag=state.relay_tag if state else None,
            subscribers=len(state.subscribers) if state else 0,
            last_tick_ok=self.last_tick_ok,
            last_error=self.last_error,
        )
