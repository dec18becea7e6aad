from decimal import Decimal
from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_BASE58_ALPHABET = set("rpshnaf39wBUDNEGHJKLM4PQRST7VWXYZ2bcdeCg65jkm8oFqi1tuvAxyz")


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


def _looks_like_classic_address(value: str) -> bool:
    return (
        value.startswith("r")
        and 25 <= len(value) <= 35
        and all(char in _BASE58_ALPHABET for char in value)
    )


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    log_level: str = Field(default="INFO", description="Minimum loguru level for the stderr sink")
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=5000, description="Server port")
    allowed_origins: list[str] | str = Field(
        default_factory=lambda: ["*"],
        description="Comma-separated list of allowed CORS origins",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/predmarket.db",
        description="SQLAlchemy compatible database URL",
    )

    # Market definition
    prediction_question: str = Field(
        default="Will XRP cross $3k by tonight?",
        description="Question text of the single active market",
    )
    prediction_duration_hours: float = Field(
        default=24.0,
        description="Hours from first start-up until voting closes",
        gt=0,
    )
    yes_wallet_address: str = Field(..., description="Collection address for 'yes' stakes")
    no_wallet_address: str = Field(..., description="Collection address for 'no' stakes")

    # Administration
    admin_secret: str = Field(..., description="Bearer token required to resolve the market")
    admin_wallet_address: str | None = Field(
        default=None,
        description="Treasury account that pays out rewards",
    )
    admin_wallet_secret: str | None = Field(
        default=None,
        description="Treasury signing secret; only needed when resolving",
    )

    # Ledger
    xrpl_rpc_url: AnyUrl | str = Field(
        default="https://s.altnet.rippletest.net:51234",
        description="rippled JSON-RPC endpoint",
    )
    ledger_request_timeout_seconds: float = Field(
        default=20.0,
        description="HTTP timeout for a single ledger request",
        gt=0,
    )

    # Settlement
    platform_fee_rate: Decimal = Field(
        default=Decimal("0.10"),
        description="Share of the pool retained by the platform",
        ge=0,
        lt=1,
    )
    vote_max_attempts: int = Field(default=3, ge=1)
    vote_finality_timeout_seconds: float = Field(default=45.0, gt=0)
    payout_poll_initial_seconds: float = Field(default=1.0, ge=0)
    payout_poll_max_seconds: float = Field(default=10.0, ge=0)
    payout_finality_timeout_seconds: float = Field(default=60.0, gt=0)
    payout_poll_max_attempts: int = Field(default=10, ge=1)
    payout_interval_seconds: float = Field(
        default=2.0,
        description="Pause between successful payouts to respect ledger rate limits",
        ge=0,
    )
    payout_ledger_offset: int = Field(
        default=4,
        description="Ledgers a payout stays valid for (LastLedgerSequence = validated + offset)",
        ge=1,
    )
    payout_fee_drops: int = Field(default=12, ge=1)

    # Monitoring
    monitor_enabled: bool = Field(default=True, description="Watch collection addresses on start-up")
    monitor_poll_interval_seconds: float = Field(default=4.0, gt=0)
    legacy_vote_verification: bool = Field(
        default=True,
        description="Verify transaction hashes submitted to the legacy vote endpoint",
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value: Any) -> list[str]:
        if value in (None, "", []):
            return ["*"]
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return [str(origin).strip() for origin in value if str(origin).strip()]

    @field_validator("yes_wallet_address", "no_wallet_address")
    @classmethod
    def _validate_collection_address(cls, value: str) -> str:
        candidate = value.strip()
        if not candidate:
            raise ValueError("collection wallet address cannot be empty")
        if not _looks_like_classic_address(candidate):
            raise ValueError(f"'{candidate}' is not a classic XRPL address")
        return candidate

    @field_validator("admin_secret")
    @classmethod
    def _validate_admin_secret(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("ADMIN_SECRET cannot be empty")
        return value

    @field_validator("admin_wallet_address", "admin_wallet_secret", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _distinct_collection_addresses(self) -> "Settings":
        if self.yes_wallet_address == self.no_wallet_address:
            raise ValueError("YES_WALLET_ADDRESS and NO_WALLET_ADDRESS must differ")
        return self

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def treasury_configured(self) -> bool:
        return bool(self.admin_wallet_address and self.admin_wallet_secret)


@lru_cache
def get_settings() -> Settings:
    return Settings()
