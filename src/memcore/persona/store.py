"""Persona persistence."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

from memcore.errors import ConcurrencyError
from memcore.persona.models import UserPersona, persona_key

logger = logging.getLogger(__name__)


@runtime_checkable
class PersonaStore(Protocol):
    """Storage for personas, keyed by ``tenant:user:chatbot|global``."""

    async def get(self, user_id: str, tenant_id: str, chatbot_id: str | None = None) -> UserPersona | None:
        ...

    async def get_by_id(self, persona_id: str) -> UserPersona | None:
        ...

    async def save(self, persona: UserPersona, expected_version: int | None = None) -> UserPersona:
        """Persist a persona.

        Raises:
            ConcurrencyError: If ``expected_version`` does not match the stored version
        """
        ...

    async def delete(self, persona_id: str) -> None:
        ...

    async def list_by_tenant(self, tenant_id: str, limit: int = 100) -> list[UserPersona]:
        ...


class InMemoryPersonaStore:
    """Dict-backed :class:`PersonaStore`. Returns copies so callers can't mutate stored state."""

    def __init__(self) -> None:
        self._personas: dict[str, UserPersona] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str, tenant_id: str, chatbot_id: str | None = None) -> UserPersona | None:
        persona = self._personas.get(persona_key(user_id, tenant_id, chatbot_id))
        return persona.copy() if persona else None

    async def get_by_id(self, persona_id: str) -> UserPersona | None:
        for persona in self._personas.values():
            if persona.id == persona_id:
                return persona.copy()
        return None

    async def save(self, persona: UserPersona, expected_version: int | None = None) -> UserPersona:
        async with self._lock:
            current = self._personas.get(persona.key)
            if expected_version is not None:
                actual = current.version if current else 0
                if actual != expected_version:
                    raise ConcurrencyError(persona.key, expected_version, actual)
            self._personas[persona.key] = persona.copy()
        logger.debug(f"Saved persona {persona.key} at version {persona.version}")
        return persona.copy()

    async def delete(self, persona_id: str) -> None:
        async with self._lock:
            for key, persona in list(self._personas.items()):
                if persona.id == persona_id:
                    del self._personas[key]
                    return

    async def list_by_tenant(self, tenant_id: str, limit: int = 100) -> list[UserPersona]:
        matches = [p.copy() for p in self._personas.values() if p.tenant_id == tenant_id]
        return matches[:limit]

    def __len__(self) -> int:
        return len(self._personas)
