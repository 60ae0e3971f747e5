"""Keygate authentication and licensing core.

Turns raw login / registration requests plus a tenant's application
configuration into accept / reject outcomes while enforcing license seats,
hardware binding, version gating, and blacklists.
"""

__version__ = "0.1.0"
