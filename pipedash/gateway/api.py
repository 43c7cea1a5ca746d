from __future__ import annotations

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from pipedash.errors import ActionFailed, RequestFailed
from pipedash.gateway.client import Gateway
from pipedash.models import Build, Deployment, Environment, Pipeline, Project, Session, User

M = TypeVar("M", bound=BaseModel)


class CicdApi:
    """
    Typed wrappers over the CI/CD REST surface. Responses arrive as envelopes
    (`{"message": ..., "builds": [...]}`); this layer unwraps them into models.

    Mutations re-raise RequestFailed as ActionFailed so the triggering control can
    reset itself; the gateway has already published the notification by then.
    AuthExpired always propagates unchanged.
    """

    def __init__(self, gateway: Gateway) -> None:
        self.gateway = gateway

    # ---- auth / profile ----

    async def login(self, *, username: str, password: str) -> Session:
        body = await self.gateway.post(
            "/auth/login", json={"username": username, "password": password}, authenticated=False
        )
        return self._one(Session, {"user": body.get("user"), "token": body.get("token")}, "POST", "/auth/login")

    async def register(self, *, username: str, email: str, password: str) -> User:
        body = await self._mutate(
            "register",
            "POST",
            "/auth/register",
            json={"username": username, "email": email, "password": password},
            authenticated=False,
        )
        return self._one(User, body.get("user"), "POST", "/auth/register")

    async def get_profile(self) -> User:
        body = await self.gateway.get("/users/profile")
        return self._one(User, body.get("user"), "GET", "/users/profile")

    async def update_profile(self, data: Dict[str, Any]) -> User:
        body = await self._mutate("update_profile", "PUT", "/users/profile", json=data)
        return self._one(User, body.get("user"), "PUT", "/users/profile")

    # ---- projects ----

    async def list_projects(self) -> List[Project]:
        body = await self.gateway.get("/projects")
        return self._many(Project, body.get("projects"), "GET", "/projects")

    async def get_project(self, project_id: int) -> Project:
        path = f"/projects/{int(project_id)}"
        body = await self.gateway.get(path)
        return self._one(Project, body.get("project"), "GET", path)

    async def create_project(self, data: Dict[str, Any]) -> Project:
        body = await self._mutate("create_project", "POST", "/projects", json=data)
        return self._one(Project, body.get("project"), "POST", "/projects")

    async def update_project(self, project_id: int, data: Dict[str, Any]) -> Project:
        path = f"/projects/{int(project_id)}"
        body = await self._mutate("update_project", "PUT", path, json=data)
        return self._one(Project, body.get("project"), "PUT", path)

    async def delete_project(self, project_id: int) -> None:
        await self._mutate("delete_project", "DELETE", f"/projects/{int(project_id)}")

    # ---- pipelines ----

    async def list_pipelines(self, *, project_id: Optional[int] = None) -> List[Pipeline]:
        body = await self.gateway.get("/pipelines", params={"projectId": project_id})
        return self._many(Pipeline, body.get("pipelines"), "GET", "/pipelines")

    async def get_pipeline(self, pipeline_id: int) -> Pipeline:
        path = f"/pipelines/{int(pipeline_id)}"
        body = await self.gateway.get(path)
        return self._one(Pipeline, body.get("pipeline"), "GET", path)

    async def create_pipeline(self, data: Dict[str, Any]) -> Pipeline:
        body = await self._mutate("create_pipeline", "POST", "/pipelines", json=data)
        return self._one(Pipeline, body.get("pipeline"), "POST", "/pipelines")

    async def update_pipeline(self, pipeline_id: int, data: Dict[str, Any]) -> Pipeline:
        path = f"/pipelines/{int(pipeline_id)}"
        body = await self._mutate("update_pipeline", "PUT", path, json=data)
        return self._one(Pipeline, body.get("pipeline"), "PUT", path)

    async def delete_pipeline(self, pipeline_id: int) -> None:
        await self._mutate("delete_pipeline", "DELETE", f"/pipelines/{int(pipeline_id)}")

    async def run_pipeline(self, pipeline_id: int) -> Dict[str, Any]:
        return await self._mutate("run_pipeline", "POST", f"/pipelines/{int(pipeline_id)}/run")

    # ---- builds ----

    async def list_builds(self, *, pipeline_id: Optional[int] = None) -> List[Build]:
        body = await self.gateway.get("/builds", params={"pipelineId": pipeline_id})
        return self._many(Build, body.get("builds"), "GET", "/builds")

    async def get_build(self, build_id: int) -> Build:
        path = f"/builds/{int(build_id)}"
        body = await self.gateway.get(path)
        return self._one(Build, body.get("build"), "GET", path)

    async def get_build_logs(self, build_id: int) -> str:
        body = await self.gateway.get(f"/builds/{int(build_id)}/logs")
        return str(body.get("logs") or "")

    async def cancel_build(self, build_id: int) -> Dict[str, Any]:
        return await self._mutate("cancel_build", "POST", f"/builds/{int(build_id)}/cancel")

    # ---- deployments ----

    async def list_deployments(
        self,
        *,
        build_id: Optional[int] = None,
        environment: Optional[Environment | str] = None,
    ) -> List[Deployment]:
        env = environment.value if isinstance(environment, Environment) else environment
        body = await self.gateway.get("/deployments", params={"buildId": build_id, "environment": env})
        return self._many(Deployment, body.get("deployments"), "GET", "/deployments")

    async def get_deployment(self, deployment_id: int) -> Deployment:
        path = f"/deployments/{int(deployment_id)}"
        body = await self.gateway.get(path)
        return self._one(Deployment, body.get("deployment"), "GET", path)

    async def get_deployment_logs(self, deployment_id: int) -> str:
        body = await self.gateway.get(f"/deployments/{int(deployment_id)}/logs")
        return str(body.get("logs") or "")

    async def rollback_deployment(self, deployment_id: int) -> Dict[str, Any]:
        return await self._mutate("rollback_deployment", "POST", f"/deployments/{int(deployment_id)}/rollback")

    # ---- helpers ----

    async def _mutate(
        self,
        action: str,
        method: str,
        path: str,
        *,
        json: Any = None,
        authenticated: bool = True,
    ) -> Dict[str, Any]:
        try:
            return await self.gateway.request(method, path, json=json, authenticated=authenticated)
        except ActionFailed:
            raise
        except RequestFailed as e:
            raise ActionFailed.from_request(e, action=action) from (e.__cause__ or e)

    def _one(self, model: Type[M], raw: Any, method: str, path: str) -> M:
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            raise self.gateway.report(
                RequestFailed("Unexpected response from server", method=method, path=path)
            ) from e

    def _many(self, model: Type[M], raw: Any, method: str, path: str) -> List[M]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise self.gateway.report(RequestFailed("Unexpected response from server", method=method, path=path))
        try:
            return [model.model_validate(item) for item in raw]
        except ValidationError as e:
            raise self.gateway.report(
                RequestFailed("Unexpected response from server", method=method, path=path)
            ) from e
