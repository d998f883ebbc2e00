import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        token_secret: str,
        token_max_age_secs: int,
        cors_origins: list[str],
        expose_fault_detail: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.token_secret = token_secret
        self.token_max_age_secs = token_max_age_secs
        self.cors_origins = cors_origins
        self.expose_fault_detail = expose_fault_detail
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    token_secret = os.getenv(
        "EXPENSES_TOKEN_SECRET",
        "3d0c6a2f8e41b7d95c1e0f4a6b8d2e7c9a1f3b5d7e9c2a4f6b8d0e1c3a5f7b9d",
    )
    token_max_age_secs = int(os.getenv("EXPENSES_TOKEN_MAX_AGE_SECS", "3600"))
    cors_origins = [
        origin.strip()
        for origin in os.getenv(
            "EXPENSES_CORS_ORIGINS", "http://localhost:3000"
        ).split(",")
        if origin.strip()
    ]
    expose_fault_detail = _env_flag("EXPENSES_EXPOSE_FAULT_DETAIL")
    log_level = os.getenv("EXPENSES_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        token_secret=token_secret,
        token_max_age_secs=token_max_age_secs,
        cors_origins=cors_origins,
        expose_fault_detail=expose_fault_detail,
        log_level=log_level,
    )
