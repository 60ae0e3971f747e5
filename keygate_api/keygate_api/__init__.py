"""Keygate HTTP API: a thin FastAPI boundary over the authentication core."""

__version__ = "0.1.0"
