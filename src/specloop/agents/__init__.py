from specloop.agents.base import (
    AgentCommand,
    AgentDefinition,
    AgentError,
    AgentNotInstalledError,
    AgentOptions,
    AgentProcessError,
    AgentType,
    UnknownAgentError,
)
from specloop.agents.catalog import AGENTS, all_agents, get_agent
from specloop.agents.process import AgentRunner, AgentRunResult

__all__ = [
    "AGENTS",
    "AgentCommand",
    "AgentDefinition",
    "AgentError",
    "AgentNotInstalledError",
    "AgentOptions",
    "AgentProcessError",
    "AgentRunResult",
    "AgentRunner",
    "AgentType",
    "UnknownAgentError",
    "all_agents",
    "get_agent",
]
