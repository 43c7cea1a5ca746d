from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from pipedash.controllers.resource import ResourceController
from pipedash.errors import ActionFailed, GatewayError
from pipedash.gateway.api import CicdApi
from pipedash.models import Build, BuildStatus, Deployment
from pipedash.telemetry.audit import AuditLogger


class ActionRunner:
    """
    Runs user-triggered mutations (cancel, rollback, run) and tracks which controls are
    busy. At most one call per (action, entity) is in flight; a second click while busy
    is a no-op. On success the owning list is refreshed; on failure the busy flag is
    cleared and ActionFailed reaches the caller.

    Statuses are never rewritten locally: the list shows whatever the next refresh brings.
    """

    def __init__(self, api: CicdApi, *, audit: AuditLogger | None = None) -> None:
        self.api = api
        self._audit = audit
        self._busy: Set[Tuple[str, int]] = set()

    def busy(self, action: str, entity_id: int) -> bool:
        return (action, int(entity_id)) in self._busy

    async def cancel_build(self, build: Build, *, refresh: ResourceController | None = None) -> bool:
        if build.status is not BuildStatus.running:
            raise ActionFailed(f"Build #{build.id} is not running", action="cancel_build")
        return await self._run("cancel_build", build.id, self.api.cancel_build, refresh)

    async def rollback_deployment(self, deployment: Deployment, *, refresh: ResourceController | None = None) -> bool:
        if deployment.status is not BuildStatus.success:
            raise ActionFailed(f"Deployment #{deployment.id} has not succeeded", action="rollback_deployment")
        return await self._run("rollback_deployment", deployment.id, self.api.rollback_deployment, refresh)

    async def run_pipeline(self, pipeline_id: int, *, refresh: ResourceController | None = None) -> bool:
        return await self._run("run_pipeline", pipeline_id, self.api.run_pipeline, refresh)

    async def _run(
        self,
        action: str,
        entity_id: int,
        call: Callable[[int], Awaitable[Dict[str, Any]]],
        refresh: Optional[ResourceController],
    ) -> bool:
        key = (action, int(entity_id))
        if key in self._busy:
            return False
        self._busy.add(key)
        self._write("action.started", {"action": action, "entity_id": entity_id})
        try:
            await call(int(entity_id))
        except GatewayError as e:
            self._write("action.failed", {"action": action, "entity_id": entity_id, "error": e.message})
            raise
        finally:
            self._busy.discard(key)
        self._write("action.succeeded", {"action": action, "entity_id": entity_id})
        if refresh is not None:
            refresh.refresh_now()
        return True

    def _write(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._audit is not None:
            self._audit.write("actions", event_type, payload)
