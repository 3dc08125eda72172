from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from syncgate.enums import ControllerPhase
from syncgate.panel.client import PanelClient
from syncgate.schemas import AgentHealthResponse, NodeHealth
from syncgate.settings import Settings

from .certs import CommandCertRenewer
from .controller import Controller
from .dataplane import DataPlane, build_dataplane
from .limiter import LimiterRegistry
from .system import check_process

logger = logging.getLogger("syncgate.agent.service")

PanelFactory = Callable[[int], PanelClient]


class NodeService:
    """Runs one controller per configured node id over a shared data plane and limiter."""

    def __init__(
        self,
        settings: Settings,
        *,
        dataplane: DataPlane | None = None,
        panel_factory: PanelFactory | None = None,
    ) -> None:
        self.settings = settings
        self.dataplane = dataplane or build_dataplane(settings, LimiterRegistry())
        self.limiter = self.dataplane.limiter
        self.panel_factory = panel_factory or (lambda node_id: PanelClient(settings, node_id))
        self.cert_renewer = CommandCertRenewer(settings)
        self.controllers: dict[int, Controller] = {}
        self._failed: dict[int, str] = {}
        self._restarts: set[asyncio.Task[None]] = set()

    def _build(self, node_id: int) -> Controller:
        return Controller(
            self.panel_factory(node_id),
            self.dataplane,
            restart=lambda: self.request_restart(node_id),
            cert_renewer=self.cert_renewer,
            cert_dir=self.settings.cert_dir,
        )

    async def _start_one(self, node_id: int) -> None:
        controller = self._build(node_id)
        self.controllers[node_id] = controller
        try:
            await controller.start()
        except Exception as exc:
            self._failed[node_id] = str(exc)
            logger.exception("controller_start_failed node_id=%s", node_id)
            return
        self._failed.pop(node_id, None)

    async def start(self) -> None:
        if not self.settings.node_ids:
            logger.warning("no NODE_IDS configured; nothing to serve")
        for node_id in self.settings.node_ids:
            await self._start_one(node_id)

    async def restart(self, node_id: int) -> None:
        controller = self.controllers.pop(node_id, None)
        if controller is not None:
            await controller.close()
            await asyncio.to_thread(controller.teardown)
            await controller.panel.aclose()
        logger.info("controller_restarting node_id=%s", node_id)
        await self._start_one(node_id)

    def request_restart(self, node_id: int) -> None:
        # Called from inside a controller task, so the restart must not be awaited there.
        task = asyncio.get_running_loop().create_task(self.restart(node_id), name=f"syncgate-restart-{node_id}")
        self._restarts.add(task)
        task.add_done_callback(self._restarts.discard)

    async def close(self) -> None:
        if self._restarts:
            await asyncio.gather(*self._restarts, return_exceptions=True)
        for controller in self.controllers.values():
            await controller.close()
            await controller.panel.aclose()

    def health(self) -> AgentHealthResponse:
        rows: list[NodeHealth] = []
        for node_id in self.settings.node_ids:
            controller = self.controllers.get(node_id)
            if controller is None:
                rows.append(
                    NodeHealth(node_id=node_id, phase=ControllerPhase.CLOSED.value, last_error=self._failed.get(node_id))
                )
                continue
            row = controller.health()
            if node_id in self._failed:
                row = row.model_copy(update={"last_error": self._failed[node_id]})
            rows.append(row)
        overall_ok = bool(rows) and all(row.phase == ControllerPhase.STEADY.value for row in rows)
        xray_ok: bool | None = None
        xray_details: str | None = None
        if not self.settings.agent_dry_run:
            xray_ok, xray_details = check_process(self.settings.xray_bin)
            overall_ok = overall_ok and xray_ok
        return AgentHealthResponse(nodes=rows, xray_ok=xray_ok, xray_details=xray_details, overall_ok=overall_ok)
