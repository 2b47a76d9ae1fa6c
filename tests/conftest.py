"""Shared test doubles."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable

import pytest

from repo_expert.errors import ProviderError
from repo_expert.providers.base import Passage


class FakeProvider:
    """In-memory passage store that records every call in order."""

    def __init__(self) -> None:
        self.passages: dict[str, dict[str, str]] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_store: Callable[[str], bool] | None = None
        self.fail_delete: set[str] = set()
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False
        self._ids = itertools.count(1)

    @property
    def name(self) -> str:
        return "fake"

    async def _enter(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.001)
        self.in_flight -= 1

    async def store_passage(self, agent_id: str, text: str) -> str:
        await self._enter()
        if self.fail_store and self.fail_store(text):
            raise ProviderError("upload failed", status=500)
        pid = f"p-{next(self._ids)}"
        self.passages.setdefault(agent_id, {})[pid] = text
        self.calls.append(("store", pid))
        return pid

    async def delete_passage(self, agent_id: str, passage_id: str) -> None:
        await self._enter()
        self.calls.append(("delete", passage_id))
        if passage_id in self.fail_delete:
            raise ProviderError("delete failed", status=500)
        self.passages.get(agent_id, {}).pop(passage_id, None)

    async def list_passages(self, agent_id: str) -> list[Passage]:
        return [Passage(id=pid, text=text) for pid, text in self.passages.get(agent_id, {}).items()]

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True

    def stored_ids(self) -> list[str]:
        return [pid for kind, pid in self.calls if kind == "store"]

    def deleted_ids(self) -> list[str]:
        return [pid for kind, pid in self.calls if kind == "delete"]


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
