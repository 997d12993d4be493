"""In-memory implementation of the request repository."""

from __future__ import annotations

from typing import Dict

from ..audit import verify_append_only
from ..contracts import WorkflowDefinition
from ..errors import ConcurrencyViolationError, RequestNotFoundError
from ..models import RequestFilter, WorkflowRequest
from .repository import RequestRepository


class InMemoryRequestRepository(RequestRepository):
    """Store request state in local memory.

    Useful for tests or when no database is configured. Stored objects are
    deep copies, so callers only ever see state through ``get``/``update``.
    Data is not persisted across process restarts.
    """

    def __init__(self) -> None:
        self._requests: Dict[str, WorkflowRequest] = {}
        self._definitions: Dict[str, WorkflowDefinition] = {}

    # ------------------------------------------------------------------
    async def create(self, request: WorkflowRequest) -> None:
        if request.request_id in self._requests:
            raise ValueError(f"Request {request.request_id} already exists")
        self._requests[request.request_id] = request.model_copy(deep=True)

    async def get(self, request_id: str) -> WorkflowRequest | None:
        stored = self._requests.get(request_id)
        return stored.model_copy(deep=True) if stored else None

    async def list(self, filter: RequestFilter | None = None) -> list[WorkflowRequest]:
        filter = filter or RequestFilter()
        matches = [r for r in self._requests.values() if filter.matches(r)]
        matches.sort(key=lambda r: r.submitted_at, reverse=True)
        if filter.limit is not None:
            matches = matches[: filter.limit]
        return [r.model_copy(deep=True) for r in matches]

    async def update(self, request: WorkflowRequest) -> WorkflowRequest:
        stored = self._requests.get(request.request_id)
        if stored is None:
            raise RequestNotFoundError(request.request_id)
        if stored.version != request.version:
            raise ConcurrencyViolationError(
                f"Stale write for request {request.request_id}: "
                f"stored version {stored.version}, got {request.version}"
            )
        verify_append_only(stored.audit_trail, request.audit_trail, request.request_id)
        request.version += 1
        self._requests[request.request_id] = request.model_copy(deep=True)
        return request

    async def delete(self, request_id: str) -> None:
        self._requests.pop(request_id, None)

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.key] = definition.model_copy(deep=True)

    async def get_definition(self, key: str) -> WorkflowDefinition | None:
        stored = self._definitions.get(key)
        return stored.model_copy(deep=True) if stored else None

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return [d.model_copy(deep=True) for d in self._definitions.values()]
