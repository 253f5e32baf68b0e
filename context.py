from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from fastapi import Request

from schemas import ApiKeyRecord
from timing import utcnow


@dataclass
class RequestContext:
    """
    Per-request facts collected for the access log.

    Created by the access control middleware before authentication,
    filled in by route handlers, read once the response is produced.
    Every field has a default so the log entry can always be built.
    """

    initial_time: datetime = field(default_factory=utcnow)
    validation_time_ms: int = 0
    query_time_ms: int = 0
    accessed_resources: List[str] = field(default_factory=list)

    def record_query(self, elapsed_ms: int, resources: List[str]) -> None:
        self.query_time_ms = elapsed_ms
        self.accessed_resources = list(resources)


# =========================
# Dependencies
# =========================

def get_request_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "context", None)
    if ctx is None:
        ctx = RequestContext()
        request.state.context = ctx
    return ctx


def get_api_key(request: Request) -> Optional[ApiKeyRecord]:
    return getattr(request.state, "api_key", None)
