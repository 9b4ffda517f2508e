"""
AWS credential and role management.
"""

from .session import CredentialSession

__all__ = ["CredentialSession"]
