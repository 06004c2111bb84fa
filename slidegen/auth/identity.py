"""
Authenticated identity collaborator.

The login flow itself lives outside this package; the ledger and the
entitlement layer only need the current user id and a fresh bearer credential
for the trusted credit endpoint.
"""

from abc import ABC, abstractmethod


class IdentityError(Exception):
    """No usable credential for the current identity."""

    pass


class IdentityProvider(ABC):
    """Current authenticated identity."""

    @property
    @abstractmethod
    def user_id(self) -> str:
        """Stable user identifier (ledger document key, provider app user id)."""

    @abstractmethod
    async def get_id_token(self) -> str:
        """
        Fresh bearer credential for the credit endpoint.

        Raises:
            IdentityError: If no credential can be obtained
        """


class StaticIdentity(IdentityProvider):
    """Fixed user id and token (scripts, tests, mock mode)."""

    def __init__(self, user_id: str, id_token: str = "mock-id-token"):
        if not user_id:
            raise ValueError("user_id must not be empty")
        self._user_id = user_id
        self._id_token = id_token

    @property
    def user_id(self) -> str:
        return self._user_id

    async def get_id_token(self) -> str:
        if not self._id_token:
            raise IdentityError(f"No id token for user {self._user_id}")
        return self._id_token
