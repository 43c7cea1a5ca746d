from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BuildStatus(str, Enum):
    pending = "pending"
    running = "running"
    success = "success"
    failed = "failed"
    cancelled = "cancelled"


class Environment(str, Enum):
    dev = "dev"
    staging = "staging"
    prod = "prod"


class _Snapshot(BaseModel):
    """
    Immutable mirror of a server record. The client never assigns identity;
    unknown fields from the server are ignored.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")


def _blank_to_none(v: object) -> object:
    # The API serializes unset optional strings as "".
    if isinstance(v, str) and not v.strip():
        return None
    return v


class User(_Snapshot):
    id: int
    username: str
    email: str = ""
    role: str = "user"
    avatar: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Project(_Snapshot):
    id: int
    name: str
    description: str = ""
    git_url: str = ""
    git_provider: str = ""
    owner_id: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Pipeline(_Snapshot):
    id: int
    name: str
    description: str = ""
    project_id: int
    config: str = Field(default="", description="Opaque pipeline definition text.")
    status: str = "inactive"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    project: Optional[Project] = None


class Build(_Snapshot):
    id: int
    pipeline_id: int
    commit_hash: str = ""
    branch: str = ""
    tag: Optional[str] = None
    status: BuildStatus
    image_name: str = ""
    image_tag: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pipeline: Optional[Pipeline] = None

    @field_validator("tag", mode="before")
    @classmethod
    def blank_tag_to_none(cls, v: object) -> object:
        return _blank_to_none(v)

    @property
    def short_commit(self) -> str:
        return self.commit_hash[:7]

    @property
    def ref(self) -> str:
        return self.tag or self.branch

    @property
    def duration_s(self) -> Optional[int]:
        if self.started_at is None or self.completed_at is None:
            return None
        return round((self.completed_at - self.started_at).total_seconds())


class Deployment(_Snapshot):
    id: int
    build_id: int
    environment: Environment
    status: BuildStatus
    replicas: int = 1
    namespace: str = ""
    service_name: str = ""
    ingress_host: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("ingress_host", mode="before")
    @classmethod
    def blank_host_to_none(cls, v: object) -> object:
        return _blank_to_none(v)


class Session(_Snapshot):
    user: User
    token: str


class LogBlob(_Snapshot):
    """Transient log text for one entity; lives only while a viewer shows it."""

    entity_type: str
    entity_id: int
    text: str
