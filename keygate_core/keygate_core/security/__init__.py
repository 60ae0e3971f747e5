"""Credential hashing."""

from keygate_core.security.passwords import BcryptVerifier, CredentialVerifier

__all__ = ["BcryptVerifier", "CredentialVerifier"]
