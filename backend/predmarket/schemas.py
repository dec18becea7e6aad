from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _coerce_amount(value: Any) -> float:
    if value is None:
        return 0.0
    return float(value)


class TransactionRecord(CamelModel):
    tx_hash: str = Field(
        validation_alias=AliasChoices("tx_hash", "txHash", "hash"),
        serialization_alias="hash",
    )
    amount: float
    timestamp: datetime

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_numeric(cls, value: Any) -> float:
        return _coerce_amount(value)


class Voter(CamelModel):
    address: str
    amount: float
    transactions: list[TransactionRecord] = Field(default_factory=list)

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_numeric(cls, value: Any) -> float:
        return _coerce_amount(value)


class Option(CamelModel):
    option_id: str = Field(
        validation_alias=AliasChoices("option_id", "optionId", "id"),
        serialization_alias="id",
    )
    text: str
    votes: int
    amount: float
    collection_address: str
    voters: list[Voter] = Field(default_factory=list)
    total_received: float
    total_distributed: float = 0.0

    @field_validator("amount", "total_received", "total_distributed", mode="before")
    @classmethod
    def _coerce_numeric(cls, value: Any) -> float:
        return _coerce_amount(value)


class RewardRecord(CamelModel):
    destination_address: str
    amount: float
    transfer_hash: str | None = None
    status: str
    timestamp: datetime
    error_message: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_numeric(cls, value: Any) -> float:
        return _coerce_amount(value)


class FailureRecord(CamelModel):
    voter: str
    amount: float
    error: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_numeric(cls, value: Any) -> float:
        return _coerce_amount(value)


class ResolutionResult(CamelModel):
    resolution_id: str
    winning_option: str
    total_pool: float
    total_payout: float
    winner_count: int
    reward_per_winner: float
    rewards: list[RewardRecord] = Field(default_factory=list)
    failed_transactions: list[FailureRecord] = Field(default_factory=list)
    success_count: int
    failed_count: int
    timestamp: datetime

    @field_validator("total_pool", "total_payout", "reward_per_winner", mode="before")
    @classmethod
    def _coerce_numeric(cls, value: Any) -> float:
        return _coerce_amount(value)


class Market(CamelModel):
    question: str
    status: str
    resolved: bool
    winning_option: str | None = None
    created_at: datetime
    updated_at: datetime
    end_time: datetime
    options: list[Option] = Field(default_factory=list)
    resolution: ResolutionResult | None = None
    total_votes: int = 0
    total_amount: float = 0.0

    @model_validator(mode="after")
    def _aggregate_totals(self) -> "Market":
        self.total_votes = sum(option.votes for option in self.options)
        self.total_amount = float(sum(option.amount for option in self.options))
        return self


class VoteRequest(CamelModel):
    option_id: str | None = None
    amount: Any = None
    sender_address: str | None = None
    wallet_secret: str | None = None
    destination_address: str | None = None
    destination_tag: int | None = None


class LegacyVoteRequest(CamelModel):
    option_id: str | None = None
    amount: Any = None
    sender_address: str | None = None
    transaction_hash: str | None = None


class ResolveRequest(CamelModel):
    outcome: str | None = None


class VoteSummary(CamelModel):
    option: str
    amount: float
    sender_address: str
    transaction_hash: str | None = None
    total_votes: int
    total_amount: float

    @field_validator("amount", "total_amount", mode="before")
    @classmethod
    def _coerce_numeric(cls, value: Any) -> float:
        return _coerce_amount(value)


class VoteReceipt(CamelModel):
    success: bool = True
    message: str
    transaction_hash: str
    vote: VoteSummary


class ResolutionResponse(ResolutionResult):
    success: bool = True
    message: str
    prediction: Market


class ErrorResponse(CamelModel):
    success: bool = False
    error: str
    details: str | None = None
