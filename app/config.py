"""Environment-driven settings."""

from __future__ import annotations

import os


def app_env() -> str:
    return os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"


def use_db() -> bool:
    return os.getenv("USE_DB", "0").strip() == "1"


def get_db_url() -> str:
    url = os.getenv("SUPABASE_DB_URL") or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("SUPABASE_DB_URL or DATABASE_URL is required when USE_DB=1")
    return url


def pool_bounds() -> tuple[int, int]:
    return int(os.getenv("HERA_DB_POOL_MIN", "1")), int(os.getenv("HERA_DB_POOL_MAX", "10"))


def query_slow_ms() -> float:
    return float(os.getenv("HERA_QUERY_SLOW_MS", "200"))


def query_log_all() -> bool:
    return os.getenv("HERA_QUERY_LOG", "").strip() == "1"


def industry() -> str:
    return os.getenv("HERA_INDUSTRY", "SALON").strip().upper() or "SALON"


def rpc_url() -> str:
    return os.getenv("HERA_RPC_URL", "http://localhost:8000").rstrip("/")


def rpc_timeout() -> float:
    return float(os.getenv("HERA_RPC_TIMEOUT", "10"))
