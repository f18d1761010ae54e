"""Configuration management for the ledger sync engine."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Config:
    """Application configuration."""

    # Project paths
    ROOT_DIR = Path(__file__).parent.parent.parent
    DATA_DIR = Path(os.getenv("LEDGER_DATA_DIR", str(ROOT_DIR / "data")))
    LOGS_DIR = Path(os.getenv("LEDGER_LOGS_DIR", str(ROOT_DIR / "logs")))
    MANIFEST_DIR = DATA_DIR / "manifests"

    # Local store & vault
    DB_PATH = Path(os.getenv("LEDGER_DB_PATH", str(DATA_DIR / "sales-ledger.db")))
    VAULT_DIR = Path(os.getenv("LEDGER_VAULT_DIR", str(DATA_DIR / "vault")))

    # Remote financials API
    API_BASE_URL: str = os.getenv("LEDGER_API_BASE_URL", "https://partner.steamgames.com/webapi")
    REQUEST_TIMEOUT: int = int(os.getenv("REQUEST_TIMEOUT", "30"))
    MIN_REQUEST_INTERVAL: float = float(os.getenv("MIN_REQUEST_INTERVAL", "0.0"))

    # Sync behaviour
    FETCH_BATCH_SIZE: int = int(os.getenv("FETCH_BATCH_SIZE", "3"))
    TRANSPORT_RETRIES: int = int(os.getenv("TRANSPORT_RETRIES", "2"))
    RETRY_BACKOFF: float = float(os.getenv("RETRY_BACKOFF", "2.0"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate configuration values."""
        if cls.FETCH_BATCH_SIZE < 1:
            raise ValueError("FETCH_BATCH_SIZE must be at least 1")
        if cls.REQUEST_TIMEOUT <= 0:
            raise ValueError("REQUEST_TIMEOUT must be positive")
        if cls.TRANSPORT_RETRIES < 0:
            raise ValueError("TRANSPORT_RETRIES cannot be negative")

    @property
    def database_url(self) -> str:
        """Construct database URL."""
        return f"sqlite:///{self.DB_PATH}"


config = Config()
