"""Workflow template registry."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from ..contracts import Urgency, WorkflowDefinition
from ..errors import NoDefinitionError
from .builder import instantiate
from .builtin import builtin_definitions
from .loader import load_definitions

if TYPE_CHECKING:
    from ..persistence import RequestRepository

logger = logging.getLogger(__name__)

DEFAULT_KEY = "default"


class DefinitionRegistry:
    """Reusable workflow templates keyed by ``"{process_type}_{urgency}"``.

    Templates are read-only once registered; ``resolve`` always hands out a
    freshly built instance.
    """

    def __init__(self, definitions: Optional[Iterable[WorkflowDefinition]] = None) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        for definition in definitions or []:
            self.register(definition.key, definition)

    def register(self, key: str, definition: WorkflowDefinition) -> None:
        """Store ``definition`` under ``key``, replacing any previous template."""
        if key in self._definitions:
            logger.warning(f"Replacing workflow definition {key}")
        self._definitions[key] = instantiate(definition)

    def get(self, key: str) -> Optional[WorkflowDefinition]:
        definition = self._definitions.get(key)
        return instantiate(definition) if definition else None

    def keys(self) -> List[str]:
        return sorted(self._definitions)

    def __contains__(self, key: str) -> bool:
        return key in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def resolve(self, process_type: str, urgency: Urgency | str = Urgency.ROUTINE) -> WorkflowDefinition:
        """Return an independent instance of the best matching template.

        Lookup order is ``{process_type}_{urgency}``, ``{process_type}``, then
        ``default``.

        Raises:
            NoDefinitionError: If not even the default template exists.
        """
        urgency_value = urgency.value if isinstance(urgency, Urgency) else urgency
        for key in (f"{process_type}_{urgency_value}", process_type, DEFAULT_KEY):
            definition = self._definitions.get(key)
            if definition is not None:
                return instantiate(definition)
        raise NoDefinitionError(
            f"No workflow definition for process {process_type!r} ({urgency_value})"
        )

    async def load(self, repository: "RequestRepository") -> int:
        """Register every template stored in ``repository``."""
        definitions = await repository.list_definitions()
        for definition in definitions:
            self.register(definition.key, definition)
        return len(definitions)

    async def save(self, repository: "RequestRepository") -> None:
        """Persist all registered templates to ``repository``."""
        for definition in self._definitions.values():
            await repository.save_definition(definition)

__all__ = [
    "DEFAULT_KEY",
    "DefinitionRegistry",
    "builtin_definitions",
    "instantiate",
    "load_definitions",
]
