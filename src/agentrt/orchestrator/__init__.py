from agentrt.orchestrator.engine import StateMachineEngine, TurnResult
from agentrt.orchestrator.interpreter import Event
from agentrt.orchestrator.sessions import SessionManager

__all__ = ["Event", "SessionManager", "StateMachineEngine", "TurnResult"]
