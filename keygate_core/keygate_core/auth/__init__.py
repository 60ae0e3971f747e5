"""Public authentication operations."""

from keygate_core.auth.orchestrator import AuthOrchestrator

__all__ = ["AuthOrchestrator"]
