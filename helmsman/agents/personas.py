"""Named agent personas (system prompts) for sub-agents."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from pydantic import BaseModel


class Persona(BaseModel):
    name: str
    description: str = ""
    system_prompt: str


class PersonaStore(Protocol):
    def get(self, name: str) -> Persona | None: ...


CRITIC_PERSONA = Persona(
    name="Critic",
    description="Strict reviewer that answers with a JSON pass/fail verdict",
    system_prompt=(
        "You are a strict, impartial reviewer. You never use tools unless the review "
        "cannot be done without them. You answer with a single JSON object and nothing else."
    ),
)


class InMemoryPersonaStore:
    """Case-insensitive persona lookup backed by a dict."""

    def __init__(self, personas: Iterable[Persona] = (CRITIC_PERSONA,)) -> None:
        self._personas = {p.name.lower(): p for p in personas}

    def add(self, persona: Persona) -> None:
        self._personas[persona.name.lower()] = persona

    def get(self, name: str) -> Persona | None:
        return self._personas.get(name.lower())

    def names(self) -> list[str]:
        return sorted(p.name for p in self._personas.values())
