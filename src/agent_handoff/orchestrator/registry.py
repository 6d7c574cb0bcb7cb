"""Agent identity lookup and activation."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from agent_handoff.config import AgentSpec
from agent_handoff.orchestrator.errors import NotFoundError, ValidationError
from agent_handoff.orchestrator.models import AgentView, DeliveryMode
from agent_handoff.orchestrator.repository import TaskStore

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Resolve agent names against the store; agents are never cached."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def resolve(self, name: str) -> AgentView:
        """Return the active agent or raise NotFoundError."""

        normalized = normalize_agent_name(name)
        agent = self.store.get_agent(normalized)
        if agent is None:
            raise NotFoundError(f"Agent not found: {normalized}")
        if not agent.is_active:
            raise NotFoundError(f"Agent is inactive: {normalized}")
        return agent

    def validate_participant(self, name: str | None, *, role: str) -> str | None:
        """Resolve an optional task participant, reporting problems as bad input."""

        if name is None or not name.strip():
            return None
        try:
            return self.resolve(name).name
        except NotFoundError as error:
            raise ValidationError(f"Invalid {role} agent: {error}") from error

    def is_active(self, name: str) -> bool:
        agent = self.store.get_agent(normalize_agent_name(name))
        return agent is not None and agent.is_active

    def delivery_mode(self, name: str) -> DeliveryMode:
        return self.resolve(name).delivery_mode

    def seed(self, specs: Sequence[AgentSpec]) -> list[AgentView]:
        agents = []
        for spec in specs:
            agent = self.store.upsert_agent(
                name=normalize_agent_name(spec.name),
                label=spec.label,
                delivery_mode=DeliveryMode(spec.delivery_mode),
            )
            logger.info("Seeded agent %s (%s)", agent.name, agent.delivery_mode.value)
            agents.append(agent)
        return agents

    def list_agents(self, *, active_only: bool = False) -> list[AgentView]:
        return self.store.list_agents(active_only=active_only)

    def set_active(self, name: str, *, is_active: bool) -> AgentView:
        agent = self.store.set_agent_active(normalize_agent_name(name), is_active=is_active)
        logger.info("Agent %s %s", agent.name, "enabled" if is_active else "disabled")
        return agent


def normalize_agent_name(name: str) -> str:
    normalized = name.strip().lower()
    if not normalized:
        raise ValidationError("Agent name must not be empty.")
    return normalized
