"""
Request context propagated from upstream middleware into the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from starlette.requests import HTTPConnection


@dataclass(frozen=True)
class RequestContext:
    """
    Per-request bundle populated by authentication/header middleware.

    Middleware stores the values on the connection state
    (request.state.info / .config / .auth); the server only reads them.
    """
    info: Any = None
    config: Any = None
    auth: Any = None

    @classmethod
    def from_connection(cls, connection: HTTPConnection) -> "RequestContext":
        """Read the context fields from an HTTP request or WebSocket."""
        state = connection.state
        return cls(
            info=getattr(state, "info", None),
            config=getattr(state, "config", None),
            auth=getattr(state, "auth", None),
        )

    def as_dict(self) -> dict[str, Any]:
        return {"info": self.info, "config": self.config, "auth": self.auth}
