from agentrt.modules.loader import load_module, register_bundle, reset_module_cache
from agentrt.modules.namespace import Namespace
from agentrt.modules.types import Module

__all__ = ["Module", "Namespace", "load_module", "register_bundle", "reset_module_cache"]
