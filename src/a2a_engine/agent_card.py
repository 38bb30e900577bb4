"""
A2A Agent Card generation.

Builds the static AgentCard advertised by the engine from settings. The card
reflects what the engine actually supports: streaming is always on and push
notifications follow ``A2A_PUSH_ENABLED``.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .a2a import __protocol_version__
from .a2a.models import (
    AgentCapabilities,
    AgentCard,
    AgentSkill,
    HTTPAuthSecurityScheme,
    SecurityScheme,
    TransportProtocol,
)
from .settings import Settings

logger = logging.getLogger(__name__)


DEFAULT_SKILLS = [
    AgentSkill(
        id="task_execution",
        name="Task Execution",
        description="Accept messages, run them as tracked tasks and report progress",
        tags=["tasks", "streaming", "push-notifications"],
        examples=[
            "Summarize this document",
            "Continue the task with the extra details below",
        ],
        inputModes=["text/plain"],
        outputModes=["text/plain"],
    ),
]


class AgentCardGenerator:
    """Generates the AgentCard advertised by the engine."""

    def __init__(
        self,
        settings: Settings,
        skills: Optional[List[AgentSkill]] = None,
        security_schemes: Optional[Dict[str, SecurityScheme]] = None,
        extended_skills: Optional[List[AgentSkill]] = None,
    ):
        self.settings = settings
        self.skills = list(skills) if skills else list(DEFAULT_SKILLS)
        self.security_schemes = security_schemes
        self.extended_skills = extended_skills

    @property
    def supports_extended_card(self) -> bool:
        return bool(self.extended_skills)

    def generate_agent_card(self) -> AgentCard:
        """Generate the public AgentCard."""
        card = self._build_card(self.skills)
        logger.debug("Generated AgentCard", extra={"agent_name": card.name, "skills_count": len(card.skills)})
        return card

    def generate_extended_agent_card(self) -> Optional[AgentCard]:
        """Card shown to authenticated callers; None when no extra skills are configured."""
        if not self.extended_skills:
            return None
        return self._build_card(self.skills + list(self.extended_skills))

    def _build_card(self, skills: List[AgentSkill]) -> AgentCard:
        return AgentCard(
            protocolVersion=__protocol_version__,
            name=self.settings.agent_name,
            description=self.settings.agent_description,
            url=self.settings.agent_url,
            preferredTransport=TransportProtocol.JSONRPC,
            version=self.settings.agent_version,
            capabilities=self._generate_capabilities(),
            securitySchemes=self._generate_security_schemes(),
            defaultInputModes=["text/plain"],
            defaultOutputModes=["text/plain"],
            skills=[skill.model_copy(deep=True) for skill in skills],
            supportsAuthenticatedExtendedCard=self.supports_extended_card or None,
        )

    def _generate_capabilities(self) -> AgentCapabilities:
        return AgentCapabilities(
            streaming=True,
            pushNotifications=self.settings.push_notifications.enabled,
            stateTransitionHistory=True,
        )

    def _generate_security_schemes(self) -> Dict[str, SecurityScheme]:
        if self.security_schemes is not None:
            return dict(self.security_schemes)
        return {
            "bearer": HTTPAuthSecurityScheme(
                type="http",
                scheme="bearer",
                description="Bearer token authentication",
            ),
        }
