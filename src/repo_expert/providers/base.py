"""Passage provider protocol and shared types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class Passage:
    """One remotely stored chunk, as returned by a listing."""

    id: str
    text: str = ""


@runtime_checkable
class PassageProvider(Protocol):
    """Remote memory store operations used by sync and reconciliation."""

    @property
    def name(self) -> str: ...

    async def store_passage(self, agent_id: str, text: str) -> str:
        """Store ``text`` as a new passage and return its id."""
        ...

    async def delete_passage(self, agent_id: str, passage_id: str) -> None:
        """Delete a passage. A passage that is already gone is not an error."""
        ...

    async def list_passages(self, agent_id: str) -> list[Passage]:
        """Every passage currently stored for the agent."""
        ...

    async def health_check(self) -> bool:
        """Check if the provider is reachable. Returns True if healthy."""
        ...
