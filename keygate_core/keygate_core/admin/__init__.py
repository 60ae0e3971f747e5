"""Tenant administration."""

from keygate_core.admin.service import TenantAdminService

__all__ = ["TenantAdminService"]
