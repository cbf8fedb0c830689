"""
應用設定

所有設定都可以透過環境變數（前綴 REKBER_）或 .env 覆寫
"""
from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./rekber.db"
    # SQLite 等待寫入鎖的秒數
    sqlite_busy_timeout: float = 30.0

    evidence_root: str = "./storage/evidence"
    max_evidence_bytes: int = 5 * 1024 * 1024
    allowed_evidence_mime_types: List[str] = [
        "image/jpeg",
        "image/png",
        "image/gif",
        "application/pdf",
    ]

    default_currency: str = "IDR"
    commission_rate: Decimal = Decimal("0")
    flat_fee: Decimal = Decimal("0")

    room_ttl_days: int = 3
    join_conflict_retries: int = 1

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "REKBER_"


@lru_cache()
def get_settings():
    return Settings()
