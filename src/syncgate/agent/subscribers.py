from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from syncgate.panel.client import PanelClient, PanelError
from syncgate.schemas import (
    NodeDescriptor,
    ShadowsocksNode,
    SubscriberRecord,
    TrojanNode,
    UsageRecord,
    VlessNode,
    VmessNode,
)

from .dataplane import DataPlane, DataPlaneError
from .metrics import observe_report, observe_reported_bytes
from .topology import KeyDerivationError, UnsupportedProtocolError, is_ss2022, ss2022_user_key, user_key

_default_log = logging.getLogger("syncgate.agent.subscribers")


def user_keys(tag: str, records: Sequence[SubscriberRecord]) -> list[str]:
    return [user_key(tag, row) for row in records]


def build_credential(node: NodeDescriptor, tag: str, subscriber: SubscriberRecord) -> dict[str, Any]:
    """Credential shape the node's protocol expects for one subscriber."""
    email = user_key(tag, subscriber)
    if isinstance(node, VlessNode):
        return {"id": subscriber.passwd, "email": email, "flow": node.flow}
    if isinstance(node, VmessNode):
        return {"id": subscriber.passwd, "email": email}
    if isinstance(node, TrojanNode):
        return {"password": subscriber.passwd, "email": email}
    if isinstance(node, ShadowsocksNode):
        password = subscriber.passwd
        if is_ss2022(node.cipher):
            password = ss2022_user_key(node.cipher, subscriber.passwd)
        return {"password": password, "email": email, "method": node.cipher}
    raise UnsupportedProtocolError(
        f"unsupported node type {getattr(node, 'node_type', node)}. Abort building user"
    )


class SubscriberProvisioner:
    def __init__(
        self,
        dataplane: DataPlane,
        panel: PanelClient,
        *,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.dataplane = dataplane
        self.panel = panel
        self.log = log or _default_log
        # Bytes that reached a counter between its query and its reset, per user key.
        self._carry: dict[str, tuple[int, int]] = {}

    def add_subscribers(self, tag: str, node: NodeDescriptor, records: Sequence[SubscriberRecord]) -> int:
        if not records:
            return 0

        credentials: list[dict[str, Any]] = []
        for row in records:
            try:
                credentials.append(build_credential(node, tag, row))
            except KeyDerivationError as exc:
                self.log.warning("subscriber_skipped id=%s tag=%s reason=%s", row.id, tag, exc)

        for credential in credentials:
            try:
                self.dataplane.add_user(tag, node.node_type, credential)
            except DataPlaneError as exc:
                raise DataPlaneError(f"failed to add subscriptions to tag {tag}: {exc}") from exc

        self.log.info("subscribers_added count=%s tag=%s", len(credentials), tag)
        return len(credentials)

    def remove_subscribers(self, identifiers: Sequence[str], tag: str) -> int:
        """Remove every listed user; a failed removal is logged and the rest still run."""
        if not identifiers:
            return 0
        removed = 0
        for email in identifiers:
            try:
                self.dataplane.remove_user(tag, email)
            except DataPlaneError as exc:
                self.log.error("subscriber_remove_failed user=%s tag=%s error=%s", email, tag, exc)
                continue
            removed += 1
        self.log.info("subscribers_removed count=%s failed=%s tag=%s", removed, len(identifiers) - removed, tag)
        return removed

    async def report_usage(self, tag: str, records: Sequence[SubscriberRecord]) -> int:
        """
        Report non-zero traffic counters, then take them off the data plane.

        If the panel does not acknowledge, nothing is reset and the same bytes (plus
        whatever accrued meanwhile) are reported on the next call. The reset returns what
        each counter held when zeroed; bytes that arrived after the query are carried
        into the next report.
        """
        by_key = {user_key(tag, row): row for row in records}
        if not by_key:
            return 0
        for key in [key for key in self._carry if key.startswith(f"{tag}|") and key not in by_key]:
            del self._carry[key]
        try:
            counters = await asyncio.to_thread(self.dataplane.query_traffic, list(by_key))
        except DataPlaneError as exc:
            self.log.warning("usage_query_failed tag=%s error=%s", tag, exc)
            return 0

        rows: list[UsageRecord] = []
        queried: dict[str, tuple[int, int]] = {}
        for key, row in by_key.items():
            up, down = counters.get(key, (0, 0))
            carry_up, carry_down = self._carry.get(key, (0, 0))
            if up + carry_up > 0 or down + carry_down > 0:
                rows.append(UsageRecord(id=row.id, upload=up + carry_up, download=down + carry_down))
                queried[key] = (up, down)
        if not rows:
            return 0

        try:
            await self.panel.report_usage(rows)
        except PanelError as exc:
            observe_report(self.panel.node_id, "usage", "error")
            self.log.warning("usage_report_failed rows=%s error=%s", len(rows), exc)
            return 0

        observe_report(self.panel.node_id, "usage", "ok")
        observe_reported_bytes(
            self.panel.node_id,
            sum(row.upload for row in rows),
            sum(row.download for row in rows),
        )
        for key in queried:
            self._carry.pop(key, None)
        try:
            taken = await asyncio.to_thread(self.dataplane.reset_traffic, list(queried))
        except DataPlaneError as exc:
            # The panel already accepted these bytes; they will be reported again.
            self.log.error("usage_reset_failed rows=%s error=%s", len(rows), exc)
        else:
            for key, (up, down) in queried.items():
                taken_up, taken_down = taken.get(key, (0, 0))
                late = (max(0, taken_up - up), max(0, taken_down - down))
                if late != (0, 0):
                    self._carry[key] = late
        self.log.info("usage_reported rows=%s", len(rows))
        return len(rows)

    async def report_online_presence(self, tag: str) -> int:
        try:
            endpoints = await asyncio.to_thread(self.dataplane.online_endpoints, tag)
        except DataPlaneError as exc:
            self.log.warning("online_query_failed tag=%s error=%s", tag, exc)
            return 0
        if not endpoints:
            return 0
        try:
            await self.panel.report_online(endpoints)
        except PanelError as exc:
            observe_report(self.panel.node_id, "online", "error")
            self.log.warning("online_report_failed rows=%s error=%s", len(endpoints), exc)
            return 0
        observe_report(self.panel.node_id, "online", "ok")
        self.log.info("online_reported rows=%s", len(endpoints))
        return len(endpoints)

    async def monitor(self, tag: str, records: Sequence[SubscriberRecord]) -> None:
        await self.report_usage(tag, records)
        await self.report_online_presence(tag)
