"""
Token ledger data models.

A user's balance is split into free units (granted by default) and premium
units (granted by purchase). Both are consumed with the same semantics: one
unit per completed generation, free units first.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field


class TokenBalance(BaseModel):
    """Immutable snapshot of a user's token balance."""

    model_config = ConfigDict(frozen=True)

    free_units: int = Field(default=1, ge=0)
    premium_units: int = Field(default=0, ge=0)

    @computed_field
    @property
    def total(self) -> int:
        return self.free_units + self.premium_units

    @computed_field
    @property
    def is_free_user(self) -> bool:
        """Users without premium units see ads and paywalls."""
        return self.premium_units == 0

    def can_afford(self, units: int) -> bool:
        return self.total >= units

    def after_debit(self, units: int) -> "TokenBalance":
        """
        Balance after consuming units, free units first.

        Raises:
            ValueError: If the balance cannot cover the debit
        """
        if units < 1:
            raise ValueError(f"debit units must be >= 1, got {units}")
        if not self.can_afford(units):
            raise ValueError(f"insufficient balance: total={self.total}, requested={units}")

        from_free = min(self.free_units, units)
        return TokenBalance(
            free_units=self.free_units - from_free,
            premium_units=self.premium_units - (units - from_free),
        )

    def to_document(self) -> dict[str, int]:
        """Serialize to the ledger document field names."""
        return {"freeTokens": self.free_units, "premiumToken": self.premium_units}

    @classmethod
    def from_document(cls, document: dict[str, Any] | None) -> "TokenBalance":
        """Parse a ledger document. Missing fields read as zero."""
        if not document:
            return cls(free_units=0, premium_units=0)
        return cls(
            free_units=max(0, int(document.get("freeTokens") or 0)),
            premium_units=max(0, int(document.get("premiumToken") or 0)),
        )


DEFAULT_BALANCE = TokenBalance(free_units=1, premium_units=0)


class LedgerEntry(BaseModel):
    """Audit record of a single ledger mutation."""

    user_id: str
    kind: str  # debit, credit, grant
    free_delta: int = 0
    premium_delta: int = 0
    reference: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PendingCredit(BaseModel):
    """
    A purchase that settled at the provider but could not be credited.

    Replayed until the credit endpoint accepts it. The (user_id, purchase_id)
    pair is the idempotency key.
    """

    user_id: str
    purchase_id: str
    units: int = Field(..., ge=1)
    attempts: int = Field(default=0, ge=0)
    last_error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
