import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/cashledger')
        # Comma-separated list of allowed CORS origins for the admin UI.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Idempotency keys (caller-supplied and derived) share one column width.
        self.idempotency_key_max_len = _env_int("CASH_IDEMPOTENCY_KEY_MAX_LEN", 100)
        self.txn_no_prefix = (os.getenv("CASH_TXN_NO_PREFIX") or "CASH").strip().upper() or "CASH"

        self.default_page_limit = _env_int("CASH_DEFAULT_PAGE_LIMIT", 50)
        self.max_page_limit = _env_int("CASH_MAX_PAGE_LIMIT", 200)

settings = Settings()
