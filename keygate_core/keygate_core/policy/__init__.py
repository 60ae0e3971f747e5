"""Access policy evaluation."""

from keygate_core.policy.access_policy import AccessPolicyEngine

__all__ = ["AccessPolicyEngine"]
