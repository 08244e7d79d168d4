from agentrt.agents.loader import load, load_cached, load_file
from agentrt.agents.types import AgentDefinition

__all__ = ["AgentDefinition", "load", "load_cached", "load_file"]
