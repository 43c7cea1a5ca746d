from __future__ import annotations

import asyncio
from typing import Optional

import httpx


class GatewayError(Exception):
    """Base for every failure surfaced by the gateway. `message` is user-facing."""

    def __init__(self, message: str, *, method: str | None = None, path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.method = method
        self.path = path


class AuthExpired(GatewayError):
    """
    The server rejected the session (401), or an authenticated call was attempted
    with no session at all. The session has already been cleared when this is raised.
    """


class RequestFailed(GatewayError):
    """Any other non-2xx response, timeout, transport error or unparseable body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        method: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message, method=method, path=path)
        self.status_code = status_code

    @property
    def timed_out(self) -> bool:
        return isinstance(self.__cause__, (httpx.TimeoutException, asyncio.TimeoutError))


class ActionFailed(RequestFailed):
    """A user-triggered mutation failed; raised at the call site so its control can reset."""

    def __init__(
        self,
        message: str,
        *,
        action: str,
        status_code: Optional[int] = None,
        method: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, method=method, path=path)
        self.action = action

    @classmethod
    def from_request(cls, err: RequestFailed, *, action: str) -> "ActionFailed":
        return cls(err.message, action=action, status_code=err.status_code, method=err.method, path=err.path)
