"""
Application configuration module.

Loads settings from environment variables (or .env file) using pydantic-settings.
Database credentials, ledger seed balances and the escrow wallet all come from
the environment so the same build can run against PostgreSQL or SQLite.
"""

from typing import Dict

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the marketplace funding core.

    Environment variables are loaded automatically from .env if present.
    ``LEDGER_SEED_BALANCES`` is parsed as JSON, e.g.
    ``LEDGER_SEED_BALANCES='{"InvestorWalletA1": 1000000}'``.
    """

    PROJECT_NAME: str = "Marketplace Funding Core"

    # ── SQLite mode (no external DB required) ──
    USE_SQLITE: bool = False

    # ── PostgreSQL connection parameters ──
    POSTGRES_USER: str = ""
    POSTGRES_PASSWORD: str = ""
    POSTGRES_SERVER: str = ""
    POSTGRES_DB: str = ""
    POSTGRES_PORT: int = 5432

    # ── Connection pool tuning ──
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # ── Logging ──
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_FILE_BACKUP_COUNT: int = 5

    # ── Resilience ──
    CB_FAILURE_THRESHOLD: int = 5
    CB_RECOVERY_TIMEOUT: float = 30.0
    TX_MAX_RETRIES: int = 3
    TX_RETRY_BASE_DELAY: float = 0.05

    # ── Ledger ──
    # Escrow wallet assigned to newly created contracts.
    CONTRACT_WALLET_ID: str = "MarketplaceEscrowWallet0001"
    LEDGER_SEED_BALANCES: Dict[str, int] = {}

    @field_validator("LEDGER_SEED_BALANCES")
    @classmethod
    def _seed_balances_non_negative(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Ledger balances never start negative."""
        negative = sorted(wallet for wallet, balance in v.items() if balance < 0)
        if negative:
            raise ValueError(f"LEDGER_SEED_BALANCES has negative balances for: {negative}")
        return v

    @model_validator(mode="after")
    def _require_pg_credentials_unless_sqlite(self) -> "Settings":
        """Fail fast if PostgreSQL credentials are missing in production mode."""
        if not self.USE_SQLITE:
            missing = [
                name
                for name in (
                    "POSTGRES_USER",
                    "POSTGRES_PASSWORD",
                    "POSTGRES_SERVER",
                    "POSTGRES_DB",
                )
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(
                    f"PostgreSQL mode requires these environment variables: "
                    f"{', '.join(missing)}. Set them in .env or the environment, "
                    f"or run with USE_SQLITE=true for an in-memory database."
                )
        return self

    @property
    def DATABASE_URL(self) -> str:
        """Async database DSN (aiosqlite in-memory or asyncpg)."""
        if self.USE_SQLITE:
            return "sqlite+aiosqlite://"
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def ledger_seed(self) -> Dict[str, int]:
        """Seed balances with the escrow wallet always present."""
        seed = dict(self.LEDGER_SEED_BALANCES)
        seed.setdefault(self.CONTRACT_WALLET_ID, 0)
        return seed

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
