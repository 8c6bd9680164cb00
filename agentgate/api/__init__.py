"""AgentGate API Module."""

from .routes import router

__all__ = ["router"]
