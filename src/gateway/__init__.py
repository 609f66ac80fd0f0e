"""
Gateway Module

Canonical types, error taxonomy and the turn orchestrator. The orchestrator
itself is imported from `src.gateway.orchestrator`.
"""

from .errors import GatewayError
from .models import Conversation, InvokeOptions, Message, TurnResult

__all__ = ["Conversation", "GatewayError", "InvokeOptions", "Message", "TurnResult"]
