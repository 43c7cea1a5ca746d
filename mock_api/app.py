from __future__ import annotations

import copy
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

PREFIX = "/api/v1"

_T0 = datetime(2025, 12, 14, 9, 0, 0, tzinfo=timezone.utc)


def _ts(minutes: int) -> str:
    return (_T0 + timedelta(minutes=minutes)).isoformat().replace("+00:00", "Z")


class ApiError(Exception):
    def __init__(self, status_code: int, error: str):
        super().__init__(error)
        self.status_code = status_code
        self.error = error


@dataclass
class MockState:
    """
    In-memory CI/CD backend. Records are plain dicts shaped like the real server's JSON.
    `calls` counts requests per "METHOD route" so tests can assert on traffic.
    """

    users: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    passwords: Dict[str, str] = field(default_factory=dict)
    tokens: Dict[str, int] = field(default_factory=dict)
    projects: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    pipelines: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    builds: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    deployments: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    logs: Dict[str, str] = field(default_factory=dict)
    calls: Counter = field(default_factory=Counter)

    def issue_token(self, user_id: int) -> str:
        token = f"tok-{uuid.uuid4().hex}"
        self.tokens[token] = user_id
        return token

    def revoke(self, token: Optional[str] = None) -> int:
        """Invalidate one token (or all of them) to simulate server-side expiry."""
        if token is None:
            n = len(self.tokens)
            self.tokens.clear()
            return n
        return 1 if self.tokens.pop(token, None) is not None else 0

    def next_id(self, table: Dict[int, Any]) -> int:
        return max(table, default=0) + 1


def seed_state() -> MockState:
    st = MockState()
    st.users[1] = {
        "id": 1,
        "username": "admin",
        "email": "admin@example.com",
        "role": "admin",
        "avatar": "",
        "created_at": _ts(0),
        "updated_at": _ts(0),
    }
    st.passwords["admin"] = "admin123"

    st.projects[1] = {
        "id": 1,
        "name": "storefront",
        "description": "Customer facing web shop",
        "git_url": "https://git.example.com/shop/storefront.git",
        "git_provider": "gitlab",
        "owner_id": 1,
        "created_at": _ts(1),
        "updated_at": _ts(1),
    }
    st.projects[2] = {
        "id": 2,
        "name": "billing",
        "description": "Invoices and payments",
        "git_url": "https://git.example.com/shop/billing.git",
        "git_provider": "gitlab",
        "owner_id": 1,
        "created_at": _ts(2),
        "updated_at": _ts(2),
    }

    st.pipelines[1] = {
        "id": 1,
        "name": "storefront-ci",
        "description": "Build and push the web image",
        "project_id": 1,
        "config": "stages: [build, push]",
        "status": "active",
        "created_at": _ts(3),
        "updated_at": _ts(3),
    }
    st.pipelines[2] = {
        "id": 2,
        "name": "main-service",
        "description": "Billing service pipeline",
        "project_id": 2,
        "config": "stages: [test, build]",
        "status": "active",
        "created_at": _ts(4),
        "updated_at": _ts(4),
    }

    builds = [
        (1, 1, "main", None, "running", _ts(10), None),
        (2, 1, "feature/ui", "", "success", _ts(20), _ts(24)),
        (3, 2, "release", "Mainline-2", "failed", _ts(30), _ts(31)),
        (4, 2, "develop", None, "pending", None, None),
    ]
    for bid, pid, branch, tag, status, started, completed in builds:
        st.builds[bid] = {
            "id": bid,
            "pipeline_id": pid,
            "commit_hash": f"{bid:02d}a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6e7f8a9",
            "branch": branch,
            "tag": tag,
            "status": status,
            "image_name": f"registry.example.com/{st.pipelines[pid]['name']}",
            "image_tag": f"{branch.replace('/', '-')}-{bid}",
            "started_at": started,
            "completed_at": completed,
            "created_at": _ts(bid * 10),
            "updated_at": _ts(bid * 10),
        }
    st.logs["build:1"] = "step 1/3: checkout\nstep 2/3: docker build\n"
    st.logs["build:2"] = "step 1/2: test\nstep 2/2: push\nok\n"
    st.logs["build:3"] = "step 1/2: test\nFAILED: 2 tests\n"
    st.logs["build:4"] = ""

    deployments = [
        (1, 2, "prod", "success", "web", "shop-prod", "shop.example.com", 3),
        (2, 1, "dev", "running", "web", "shop-dev", "", 1),
        (3, 3, "staging", "failed", "billing-api", "billing-staging", None, 2),
    ]
    for did, bid, env, status, svc, ns, host, replicas in deployments:
        st.deployments[did] = {
            "id": did,
            "build_id": bid,
            "environment": env,
            "status": status,
            "replicas": replicas,
            "namespace": ns,
            "service_name": svc,
            "ingress_host": host,
            "started_at": _ts(40 + did),
            "completed_at": _ts(45 + did) if status != "running" else None,
            "created_at": _ts(40 + did),
            "updated_at": _ts(40 + did),
        }
    st.logs["deployment:1"] = "rollout complete: 3/3 replicas ready\n"
    st.logs["deployment:2"] = "waiting for rollout: 0/1 replicas ready\n"
    st.logs["deployment:3"] = "ImagePullBackOff\n"
    return st


def _state(request: Request) -> MockState:
    return request.app.state.mock


def _count(request: Request) -> None:
    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    _state(request).calls[f"{request.method} {path}"] += 1


def _require_user(request: Request) -> Dict[str, Any]:
    auth = request.headers.get("authorization", "")
    if not auth.startswith("Bearer "):
        raise ApiError(401, "Authorization header required")
    token = auth[len("Bearer ") :].strip()
    st = _state(request)
    user_id = st.tokens.get(token)
    if user_id is None or user_id not in st.users:
        raise ApiError(401, "Invalid or expired token")
    return st.users[user_id]


def _get(table: Dict[int, Dict[str, Any]], item_id: int, what: str) -> Dict[str, Any]:
    item = table.get(int(item_id))
    if item is None:
        raise ApiError(404, f"{what} not found")
    return item


async def _body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise ApiError(400, "Invalid request body") from None
    if not isinstance(data, dict):
        raise ApiError(400, "Invalid request body")
    return data


def _with_pipeline(st: MockState, build: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(build)
    p = st.pipelines.get(build["pipeline_id"])
    if p is not None:
        out["pipeline"] = copy.deepcopy(p)
    return out


router = APIRouter(prefix=PREFIX)


# ---- auth / users ----


@router.post("/auth/login")
async def login(request: Request) -> Dict[str, Any]:
    _count(request)
    data = await _body(request)
    st = _state(request)
    username = str(data.get("username") or "")
    if not username or st.passwords.get(username) != data.get("password"):
        raise ApiError(401, "Invalid username or password")
    user = next(u for u in st.users.values() if u["username"] == username)
    return {"message": "Login successful", "user": copy.deepcopy(user), "token": st.issue_token(user["id"])}


@router.post("/auth/register", status_code=201)
async def register(request: Request) -> Dict[str, Any]:
    _count(request)
    data = await _body(request)
    st = _state(request)
    username = str(data.get("username") or "").strip()
    if not username or not data.get("password"):
        raise ApiError(400, "username and password are required")
    if username in st.passwords:
        raise ApiError(400, "username already exists")
    uid = st.next_id(st.users)
    st.users[uid] = {
        "id": uid,
        "username": username,
        "email": str(data.get("email") or ""),
        "role": "user",
        "avatar": "",
        "created_at": _ts(100),
        "updated_at": _ts(100),
    }
    st.passwords[username] = str(data["password"])
    return {"message": "User created successfully", "user": copy.deepcopy(st.users[uid])}


@router.get("/users/profile")
def get_profile(request: Request) -> Dict[str, Any]:
    _count(request)
    return {"user": copy.deepcopy(_require_user(request))}


@router.put("/users/profile")
async def update_profile(request: Request) -> Dict[str, Any]:
    _count(request)
    user = _require_user(request)
    data = await _body(request)
    for k in ("email", "avatar"):
        if k in data:
            user[k] = str(data[k] or "")
    return {"message": "Profile updated successfully", "user": copy.deepcopy(user)}


# ---- projects ----


@router.get("/projects")
def list_projects(request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    return {"projects": [copy.deepcopy(p) for p in _state(request).projects.values()]}


@router.get("/projects/{project_id}")
def get_project(project_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    return {"project": copy.deepcopy(_get(_state(request).projects, project_id, "Project"))}


@router.post("/projects", status_code=201)
async def create_project(request: Request) -> Dict[str, Any]:
    _count(request)
    user = _require_user(request)
    data = await _body(request)
    if not str(data.get("name") or "").strip():
        raise ApiError(400, "name is required")
    st = _state(request)
    pid = st.next_id(st.projects)
    st.projects[pid] = {
        "id": pid,
        "name": str(data["name"]),
        "description": str(data.get("description") or ""),
        "git_url": str(data.get("git_url") or ""),
        "git_provider": str(data.get("git_provider") or "gitlab"),
        "owner_id": user["id"],
        "created_at": _ts(200 + pid),
        "updated_at": _ts(200 + pid),
    }
    return {"message": "Project created successfully", "project": copy.deepcopy(st.projects[pid])}


@router.put("/projects/{project_id}")
async def update_project(project_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    project = _get(_state(request).projects, project_id, "Project")
    data = await _body(request)
    for k in ("name", "description", "git_url", "git_provider"):
        if k in data:
            project[k] = str(data[k] or "")
    return {"message": "Project updated successfully", "project": copy.deepcopy(project)}


@router.delete("/projects/{project_id}")
def delete_project(project_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    st = _state(request)
    _get(st.projects, project_id, "Project")
    del st.projects[int(project_id)]
    return {"message": "Project deleted successfully"}


# ---- pipelines ----


@router.get("/pipelines")
def list_pipelines(request: Request, projectId: Optional[int] = None) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    items = list(_state(request).pipelines.values())
    if projectId is not None:
        items = [p for p in items if p["project_id"] == projectId]
    return {"pipelines": copy.deepcopy(items)}


@router.get("/pipelines/{pipeline_id}")
def get_pipeline(pipeline_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    return {"pipeline": copy.deepcopy(_get(_state(request).pipelines, pipeline_id, "Pipeline"))}


@router.post("/pipelines", status_code=201)
async def create_pipeline(request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    data = await _body(request)
    st = _state(request)
    if not str(data.get("name") or "").strip():
        raise ApiError(400, "name is required")
    _get(st.projects, int(data.get("project_id") or 0), "Project")
    pid = st.next_id(st.pipelines)
    st.pipelines[pid] = {
        "id": pid,
        "name": str(data["name"]),
        "description": str(data.get("description") or ""),
        "project_id": int(data["project_id"]),
        "config": str(data.get("config") or ""),
        "status": "active",
        "created_at": _ts(300 + pid),
        "updated_at": _ts(300 + pid),
    }
    return {"message": "Pipeline created successfully", "pipeline": copy.deepcopy(st.pipelines[pid])}


@router.put("/pipelines/{pipeline_id}")
async def update_pipeline(pipeline_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    pipeline = _get(_state(request).pipelines, pipeline_id, "Pipeline")
    data = await _body(request)
    for k in ("name", "description", "config", "status"):
        if k in data:
            pipeline[k] = str(data[k] or "")
    return {"message": "Pipeline updated successfully", "pipeline": copy.deepcopy(pipeline)}


@router.delete("/pipelines/{pipeline_id}")
def delete_pipeline(pipeline_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    st = _state(request)
    _get(st.pipelines, pipeline_id, "Pipeline")
    del st.pipelines[int(pipeline_id)]
    return {"message": "Pipeline deleted successfully"}


@router.post("/pipelines/{pipeline_id}/run")
def run_pipeline(pipeline_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    st = _state(request)
    pipeline = _get(st.pipelines, pipeline_id, "Pipeline")
    bid = st.next_id(st.builds)
    st.builds[bid] = {
        "id": bid,
        "pipeline_id": pipeline["id"],
        "commit_hash": uuid.uuid4().hex + uuid.uuid4().hex[:8],
        "branch": "main",
        "tag": None,
        "status": "pending",
        "image_name": f"registry.example.com/{pipeline['name']}",
        "image_tag": f"main-{bid}",
        "started_at": None,
        "completed_at": None,
        "created_at": _ts(400 + bid),
        "updated_at": _ts(400 + bid),
    }
    st.logs[f"build:{bid}"] = ""
    return {"message": "Pipeline started", "build": _with_pipeline(st, st.builds[bid])}


# ---- builds ----


@router.get("/builds")
def list_builds(request: Request, pipelineId: Optional[int] = None) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    st = _state(request)
    items = [b for b in st.builds.values() if pipelineId is None or b["pipeline_id"] == pipelineId]
    return {"message": "Builds retrieved successfully", "builds": [_with_pipeline(st, b) for b in items]}


@router.get("/builds/{build_id}")
def get_build(build_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    st = _state(request)
    return {"build": _with_pipeline(st, _get(st.builds, build_id, "Build"))}


@router.get("/builds/{build_id}/logs")
def get_build_logs(build_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    st = _state(request)
    _get(st.builds, build_id, "Build")
    return {"logs": st.logs.get(f"build:{int(build_id)}", "")}


@router.post("/builds/{build_id}/cancel")
def cancel_build(build_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    build = _get(_state(request).builds, build_id, "Build")
    if build["status"] != "running":
        raise ApiError(400, "Build is not running")
    build["status"] = "cancelled"
    build["completed_at"] = _ts(500)
    return {"message": "Build cancelled successfully"}


# ---- deployments ----


@router.get("/deployments")
def list_deployments(
    request: Request,
    buildId: Optional[int] = None,
    environment: Optional[str] = None,
) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    items: List[Dict[str, Any]] = list(_state(request).deployments.values())
    if buildId is not None:
        items = [d for d in items if d["build_id"] == buildId]
    if environment:
        items = [d for d in items if d["environment"] == environment]
    return {"message": "Deployments retrieved successfully", "deployments": copy.deepcopy(items)}


@router.get("/deployments/{deployment_id}")
def get_deployment(deployment_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    return {"deployment": copy.deepcopy(_get(_state(request).deployments, deployment_id, "Deployment"))}


@router.get("/deployments/{deployment_id}/logs")
def get_deployment_logs(deployment_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    st = _state(request)
    _get(st.deployments, deployment_id, "Deployment")
    return {"logs": st.logs.get(f"deployment:{int(deployment_id)}", "")}


@router.post("/deployments/{deployment_id}/rollback")
def rollback_deployment(deployment_id: int, request: Request) -> Dict[str, Any]:
    _count(request)
    _require_user(request)
    st = _state(request)
    deployment = _get(st.deployments, deployment_id, "Deployment")
    if deployment["status"] != "success":
        raise ApiError(400, "Only successful deployments can be rolled back")
    st.logs[f"deployment:{deployment['id']}"] = st.logs.get(f"deployment:{deployment['id']}", "") + "rollback requested\n"
    return {"message": "Deployment rollback initiated"}


@router.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok"}


def create_app(state: Optional[MockState] = None) -> FastAPI:
    new_app = FastAPI(title="pipedash mock CI/CD API", version="0.1.0")
    new_app.state.mock = state or seed_state()

    @new_app.exception_handler(ApiError)
    async def _api_error(_request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse({"error": exc.error}, status_code=exc.status_code)

    new_app.include_router(router)
    return new_app


app = create_app()
