from order.agents.base import (
    ERROR,
    UNKNOWN,
    AgentResult,
    SkillAgent,
    parse_agent_result,
)
from order.agents.collaborators import EXITED, Collaborators, SkillCollaborators

__all__ = [
    "ERROR",
    "EXITED",
    "UNKNOWN",
    "AgentResult",
    "Collaborators",
    "SkillAgent",
    "SkillCollaborators",
    "parse_agent_result",
]
