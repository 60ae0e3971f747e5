"""License validation and seat accounting."""

from keygate_core.license.license_manager import LicenseManager

__all__ = ["LicenseManager"]
