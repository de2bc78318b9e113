"""
Runtime configuration, read from the environment (and a .env file if present).
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

DEFAULT_DATA_DIR = Path(__file__).parent / "data"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


@dataclass(frozen=True)
class Settings:
    debug: bool = False
    production_domain: str = "keyroom.example.com"
    allowed_hosts: Tuple[str, ...] = ()
    data_dir: Path = DEFAULT_DATA_DIR
    admin_code: Optional[str] = None
    inactive_timeout_s: float = 30.0
    delete_grace_s: float = 30.0
    message_cap: int = 100
    cleanup_interval_s: float = 5.0
    rate_limit_enabled: bool = True
    join_rate_limit: str = "20/minute"
    send_rate_limit: str = "60/minute"
    log_level: str = "INFO"

    @property
    def snapshot_path(self) -> Path:
        return self.data_dir / "rooms.json"

    @property
    def cors_origins(self) -> list:
        origins = [
            f"https://{self.production_domain}",
            f"https://www.{self.production_domain}",
        ]
        if self.debug:
            origins += ["http://localhost:8000", "http://127.0.0.1:8000"]
        return origins

    @property
    def trusted_hosts(self) -> list:
        if self.allowed_hosts:
            return list(self.allowed_hosts)
        hosts = [self.production_domain, f"*.{self.production_domain}"]
        if self.debug:
            hosts += ["localhost", "127.0.0.1"]
        return hosts

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        debug = _env_bool("DEBUG", False)
        hosts = os.getenv("KEYROOM_ALLOWED_HOSTS", "")
        return cls(
            debug=debug,
            production_domain=os.getenv("PRODUCTION_DOMAIN", "keyroom.example.com"),
            allowed_hosts=tuple(h.strip() for h in hosts.split(",") if h.strip()),
            data_dir=Path(os.getenv("KEYROOM_DATA_DIR", str(DEFAULT_DATA_DIR))),
            admin_code=os.getenv("KEYROOM_ADMIN_CODE") or None,
            inactive_timeout_s=_env_float("KEYROOM_INACTIVE_TIMEOUT", 30.0),
            delete_grace_s=_env_float("KEYROOM_DELETE_GRACE", 30.0),
            message_cap=int(os.getenv("KEYROOM_MESSAGE_CAP", "100")),
            cleanup_interval_s=_env_float("KEYROOM_CLEANUP_INTERVAL", 5.0),
            rate_limit_enabled=_env_bool("KEYROOM_RATE_LIMITS", True),
            join_rate_limit=os.getenv("KEYROOM_JOIN_LIMIT", "20/minute"),
            send_rate_limit=os.getenv("KEYROOM_SEND_LIMIT", "60/minute"),
            log_level=os.getenv("LOG_LEVEL", "DEBUG" if debug else "INFO"),
        )
