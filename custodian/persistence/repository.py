"""Repository abstraction for request and template persistence."""

from __future__ import annotations

from typing import Protocol

from ..contracts import WorkflowDefinition
from ..models import RequestFilter, WorkflowRequest


class RequestRepository(Protocol):
    """Protocol for request state persistence backends.

    ``update`` is an atomic read-modify-write keyed by request id: the stored
    ``version`` must equal the incoming one, and the audit trail may only
    grow.
    """

    async def create(self, request: WorkflowRequest) -> None:
        """Persist a new request."""

    async def get(self, request_id: str) -> WorkflowRequest | None:
        """Return an independent copy of the request, if present."""

    async def list(self, filter: RequestFilter | None = None) -> list[WorkflowRequest]:
        """Return matching requests, newest submission first."""

    async def update(self, request: WorkflowRequest) -> WorkflowRequest:
        """Persist changes and return the request with its new version."""

    async def delete(self, request_id: str) -> None:
        """Evict a request from active storage."""

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Persist a workflow template under its key."""

    async def get_definition(self, key: str) -> WorkflowDefinition | None:
        """Retrieve a workflow template by key."""

    async def list_definitions(self) -> list[WorkflowDefinition]:
        """Return all stored workflow templates."""
