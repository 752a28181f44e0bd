import os
import tempfile
from dataclasses import dataclass, field
from typing import Dict
from dotenv import load_dotenv

load_dotenv()


def _default_data_file() -> str:
    # Priority: LIBRARY_DB_FILE, legacy LIBRARY_DATA_FILE, then a per-process temp file
    return (
        os.environ.get("LIBRARY_DB_FILE")
        or os.environ.get("LIBRARY_DATA_FILE")
        or os.path.join(tempfile.gettempdir(), f"circulation_{os.getpid()}.db")
    )


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    data_file: str = field(default_factory=_default_data_file)

    # Circulation rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    due_soon_days: int = int(os.getenv("DUE_SOON_DAYS", "3"))

    # Coin rewards
    review_coins: int = int(os.getenv("REVIEW_COINS", "5"))
    summary_coins: int = int(os.getenv("SUMMARY_COINS", "15"))
    starting_coins: int = int(os.getenv("STARTING_COINS", "0"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Community Library Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    def coin_awards(self) -> Dict[str, int]:
        """Coin amount credited per approved submission type."""
        return {"review": self.review_coins, "summary": self.summary_coins}


settings = Settings()
