from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from pipedash.controllers.filters import Predicate, all_of, field_equals, text_search
from pipedash.controllers.resource import ResourceController
from pipedash.gateway.api import CicdApi
from pipedash.models import Build, Deployment, Environment, Pipeline, Project
from pipedash.telemetry.audit import AuditLogger

BUILDS_INTERVAL_S = 10.0
DEPLOYMENTS_INTERVAL_S = 15.0

BUILD_SEARCH_FIELDS = ("branch", "tag")
DEPLOYMENT_SEARCH_FIELDS = ("service_name", "namespace", "ingress_host")
PROJECT_SEARCH_FIELDS = ("name", "description")
PIPELINE_SEARCH_FIELDS = ("name", "description")


def build_filter(search: str | None = None, *, pipeline_id: Optional[int] = None) -> Predicate:
    return all_of(text_search(search, *BUILD_SEARCH_FIELDS), field_equals("pipeline_id", pipeline_id))


def deployment_filter(search: str | None = None, *, environment: Environment | str | None = None) -> Predicate:
    return all_of(text_search(search, *DEPLOYMENT_SEARCH_FIELDS), field_equals("environment", environment))


def project_filter(search: str | None = None) -> Predicate:
    return text_search(search, *PROJECT_SEARCH_FIELDS)


def pipeline_filter(search: str | None = None, *, project_id: Optional[int] = None) -> Predicate:
    return all_of(text_search(search, *PIPELINE_SEARCH_FIELDS), field_equals("project_id", project_id))


def builds_controller(
    api: CicdApi,
    *,
    interval_s: float = BUILDS_INTERVAL_S,
    pipeline_id: Optional[int] = None,
    gate: Callable[[], bool] | None = None,
    audit: AuditLogger | None = None,
) -> ResourceController[Build]:
    async def _fetch(params: Dict[str, Any]) -> List[Build]:
        return await api.list_builds(pipeline_id=params.get("pipeline_id"))

    return ResourceController(
        "builds", _fetch, interval_s=interval_s, params={"pipeline_id": pipeline_id}, gate=gate, audit=audit
    )


def deployments_controller(
    api: CicdApi,
    *,
    interval_s: float = DEPLOYMENTS_INTERVAL_S,
    build_id: Optional[int] = None,
    environment: Environment | str | None = None,
    gate: Callable[[], bool] | None = None,
    audit: AuditLogger | None = None,
) -> ResourceController[Deployment]:
    async def _fetch(params: Dict[str, Any]) -> List[Deployment]:
        return await api.list_deployments(build_id=params.get("build_id"), environment=params.get("environment"))

    return ResourceController(
        "deployments",
        _fetch,
        interval_s=interval_s,
        params={"build_id": build_id, "environment": environment},
        gate=gate,
        audit=audit,
    )


def projects_controller(
    api: CicdApi,
    *,
    gate: Callable[[], bool] | None = None,
    audit: AuditLogger | None = None,
) -> ResourceController[Project]:
    async def _fetch(params: Dict[str, Any]) -> List[Project]:
        return await api.list_projects()

    return ResourceController("projects", _fetch, gate=gate, audit=audit)


def pipelines_controller(
    api: CicdApi,
    *,
    project_id: Optional[int] = None,
    gate: Callable[[], bool] | None = None,
    audit: AuditLogger | None = None,
) -> ResourceController[Pipeline]:
    async def _fetch(params: Dict[str, Any]) -> List[Pipeline]:
        return await api.list_pipelines(project_id=params.get("project_id"))

    return ResourceController("pipelines", _fetch, params={"project_id": project_id}, gate=gate, audit=audit)
