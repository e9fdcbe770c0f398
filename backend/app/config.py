import os
from decimal import Decimal, InvalidOperation
from typing import List

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def _env_decimal(self, name: str, default: str) -> Decimal:
        raw = (os.getenv(name) or "").strip()
        try:
            return Decimal(raw or default)
        except InvalidOperation:
            return Decimal(default)

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv("APP_DATABASE_URL") or os.getenv('DATABASE_URL', 'postgresql://localhost/repairhub')
        self.db_pool_min = self._env_int("DB_POOL_MIN_SIZE", 1)
        self.db_pool_max = self._env_int("DB_POOL_MAX_SIZE", 10)
        # Comma-separated list of allowed CORS origins for the admin and branch apps.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # GSTR-1: unregistered inter-state invoices above this value go to B2C-Large.
        self.b2c_large_threshold = self._env_decimal("GST_B2C_LARGE_THRESHOLD", "250000")

        # Sequence allocation: bounded retries on contention, never block forever.
        self.sequence_max_retries = max(1, self._env_int("SEQUENCE_MAX_RETRIES", 5))
        self.sequence_retry_backoff_ms = max(0, self._env_int("SEQUENCE_RETRY_BACKOFF_MS", 25))
        self.sequence_lock_timeout_ms = max(1, self._env_int("SEQUENCE_LOCK_TIMEOUT_MS", 2000))

settings = Settings()
