from __future__ import annotations

from typing import Callable, List, Optional

import httpx

from pipedash.controllers.actions import ActionRunner
from pipedash.controllers.resource import ResourceController
from pipedash.controllers.resources import (
    builds_controller,
    deployments_controller,
    pipelines_controller,
    projects_controller,
)
from pipedash.gateway.api import CicdApi
from pipedash.gateway.client import Gateway
from pipedash.logs.viewer import LogViewer
from pipedash.models import Build, Deployment, Environment, Pipeline, Project
from pipedash.notifications.channel import NotificationChannel
from pipedash.session.storage import SessionStorage
from pipedash.session.store import SessionStore
from pipedash.settings import Settings
from pipedash.telemetry.audit import AuditLogger


class DashboardContext:
    """
    Owns everything one dashboard process shares: settings, audit log, notification
    channel, session, gateway and API. Controllers created here are gated on the
    session and are stopped by `aclose()`.

    Tests build isolated instances with their own settings and an in-memory transport.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        audit: AuditLogger,
        notifications: NotificationChannel,
        session: SessionStore,
        gateway: Gateway,
    ) -> None:
        self.settings = settings
        self.audit = audit
        self.notifications = notifications
        self.session = session
        self.gateway = gateway
        self.api = CicdApi(gateway)
        self.actions = ActionRunner(self.api, audit=audit)
        self._controllers: List[ResourceController] = []
        self._closed = False

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        navigate: Callable[[str], None] | None = None,
    ) -> "DashboardContext":
        s = settings or Settings()
        audit = AuditLogger(s.audit_log_path)
        notifications = NotificationChannel(history_size=s.notification_history_size)
        session = SessionStore(
            SessionStorage(s.session_path),
            navigate=navigate,
            login_path=s.login_path,
            audit=audit,
        )
        session.restore()
        gateway = Gateway(
            s.api_base_url,
            session=session,
            notifications=notifications,
            timeout_s=s.request_timeout_s,
            audit=audit,
            transport=transport,
        )
        return cls(settings=s, audit=audit, notifications=notifications, session=session, gateway=gateway)

    async def __aenter__(self) -> "DashboardContext":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def login(self, username: str, password: str):
        return await self.session.login(self.api, username=username, password=password)

    def logout(self) -> None:
        for c in self._controllers:
            c.stop()
        self.session.logout()

    # ---- controllers ----

    def _gate(self) -> bool:
        return self.session.is_authenticated

    def _track(self, controller: ResourceController) -> ResourceController:
        self._controllers.append(controller)
        return controller

    def builds(self, *, pipeline_id: Optional[int] = None) -> ResourceController[Build]:
        return self._track(
            builds_controller(
                self.api,
                interval_s=self.settings.builds_refresh_interval_s,
                pipeline_id=pipeline_id,
                gate=self._gate,
                audit=self.audit,
            )
        )

    def deployments(
        self,
        *,
        build_id: Optional[int] = None,
        environment: Environment | str | None = None,
    ) -> ResourceController[Deployment]:
        return self._track(
            deployments_controller(
                self.api,
                interval_s=self.settings.deployments_refresh_interval_s,
                build_id=build_id,
                environment=environment,
                gate=self._gate,
                audit=self.audit,
            )
        )

    def projects(self) -> ResourceController[Project]:
        return self._track(projects_controller(self.api, gate=self._gate, audit=self.audit))

    def pipelines(self, *, project_id: Optional[int] = None) -> ResourceController[Pipeline]:
        return self._track(pipelines_controller(self.api, project_id=project_id, gate=self._gate, audit=self.audit))

    def build_logs(self) -> LogViewer:
        return LogViewer(self.api.get_build_logs, entity_type="build", audit=self.audit)

    def deployment_logs(self) -> LogViewer:
        return LogViewer(self.api.get_deployment_logs, entity_type="deployment", audit=self.audit)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for c in self._controllers:
            c.stop()
        # Stopped controllers drop these responses, but the client must outlive them.
        for c in self._controllers:
            await c.wait_idle()
        self._controllers.clear()
        await self.gateway.aclose()
