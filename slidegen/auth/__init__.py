"""
Identity collaborator interface.
"""

from slidegen.auth.identity import IdentityError, IdentityProvider, StaticIdentity

__all__ = ["IdentityError", "IdentityProvider", "StaticIdentity"]
