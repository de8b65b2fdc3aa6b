import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        pending_ttl_hours: int,
        import_max_rows: int,
        import_max_file_bytes: int,
        import_max_errors: int,
        amount_decimal_places: int,
        commit_isolation_level: Optional[str],
        pending_sweep_enabled: bool,
        pending_sweep_interval_hours: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.pending_ttl_hours = pending_ttl_hours
        self.import_max_rows = import_max_rows
        self.import_max_file_bytes = import_max_file_bytes
        self.import_max_errors = import_max_errors
        self.amount_decimal_places = amount_decimal_places
        self.commit_isolation_level = commit_isolation_level
        self.pending_sweep_enabled = pending_sweep_enabled
        self.pending_sweep_interval_hours = pending_sweep_interval_hours


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    pending_ttl_hours = int(os.getenv("LEDGER_PENDING_TTL_HOURS", "24"))
    import_max_rows = int(os.getenv("LEDGER_IMPORT_MAX_ROWS", "1000"))
    import_max_file_bytes = int(
        os.getenv("LEDGER_IMPORT_MAX_FILE_BYTES", str(5 * 1024 * 1024))
    )
    import_max_errors = int(os.getenv("LEDGER_IMPORT_MAX_ERRORS", "20"))
    amount_decimal_places = int(os.getenv("LEDGER_AMOUNT_DECIMAL_PLACES", "2"))
    # empty string keeps the engine default
    commit_isolation_level = (
        os.getenv("LEDGER_COMMIT_ISOLATION_LEVEL", "SERIALIZABLE").strip() or None
    )
    pending_sweep_enabled = _env_bool("LEDGER_PENDING_SWEEP_ENABLED", "false")
    pending_sweep_interval_hours = int(
        os.getenv("LEDGER_PENDING_SWEEP_INTERVAL_HOURS", "6")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        pending_ttl_hours=pending_ttl_hours,
        import_max_rows=import_max_rows,
        import_max_file_bytes=import_max_file_bytes,
        import_max_errors=import_max_errors,
        amount_decimal_places=amount_decimal_places,
        commit_isolation_level=commit_isolation_level,
        pending_sweep_enabled=pending_sweep_enabled,
        pending_sweep_interval_hours=pending_sweep_interval_hours,
    )
