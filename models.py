from pydantic import BaseModel, Field, field_validator
from dataclasses import dataclass
from enum import Enum
from typing import Literal, Optional
from datetime import datetime

from config import get_settings


class ChargeStatus(str, Enum):
    success = "Success"
    insufficient_balance = "InsufficientBalance"
    transaction_error = "TransactionError"


def _default_account() -> str:
    return get_settings().default_account


def _default_charges() -> int:
    return get_settings().default_charges


class ResetRequest(BaseModel):
    account: str = Field(
        default_factory=_default_account,
        min_length=1,
        max_length=200,
        description="Account identifier"
    )


class ChargeRequest(BaseModel):
    account: str = Field(
        default_factory=_default_account,
        min_length=1,
        max_length=200,
        description="Account identifier"
    )
    charges: int = Field(
        default_factory=_default_charges,
        description="Amount to deduct from the balance"
    )

    @field_validator('charges')
    @classmethod
    def validate_charges(cls, v):
        if v < 0:
            raise ValueError('Charges cannot be negative')
        return v


class ChargeResult(BaseModel):
    isAuthorized: bool = Field(..., description="Whether the charge was applied")
    remainingBalance: int = Field(..., description="Balance after the charge, or the observed balance when not applied")
    charges: int = Field(..., description="Amount actually deducted")
    status: ChargeStatus = Field(..., description="Outcome of the charge")


@dataclass
class ChargeAttempt:
    """One charge in flight. Lives only until the caller gets its result."""

    account: str
    amount: int
    observed_balance: Optional[int] = None
    status: Optional[ChargeStatus] = None
    remaining_balance: int = 0
    deducted: int = 0

    def succeed(self, remaining: int) -> None:
        self.status = ChargeStatus.success
        self.remaining_balance = remaining
        self.deducted = self.amount

    def reject(self, status: ChargeStatus) -> None:
        self.status = status
        self.remaining_balance = self.observed_balance if self.observed_balance is not None else 0
        self.deducted = 0

    def to_result(self) -> ChargeResult:
        return ChargeResult(
            isAuthorized=self.status == ChargeStatus.success,
            remainingBalance=self.remaining_balance,
            charges=self.deducted,
            status=self.status,
        )


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"] = Field(..., description="Service health status")
    store: str = Field(..., description="Balance store backend in use")
    timestamp: datetime = Field(default_factory=datetime.now)
