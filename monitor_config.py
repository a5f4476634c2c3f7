from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(slots=True)
class MonitorEnvironmentConfig:
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_pass: str
    db_pool_min: int
    db_pool_max: int
    db_command_timeout: float
    sideshift_base_url: str
    sideshift_api_key: str
    sideshift_client_ip: str | None
    sideshift_timeout_seconds: float
    telegram_bot_token: str
    tick_interval_seconds: float
    max_concurrent_polls: int
    status_buffer_path: Path
    status_flush_interval_seconds: float
    status_failure_threshold: int

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.db_user}:{self.db_pass}@{self.db_host}:{self.db_port}/{self.db_name}"


def load_monitor_environment(env_file: str = ".env") -> MonitorEnvironmentConfig:
    load_dotenv(env_file, override=False)

    return MonitorEnvironmentConfig(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_name=os.getenv("DB_NAME", "swap_orders"),
        db_user=os.getenv("DB_USER", "swapbot"),
        db_pass=os.getenv("DB_PASS", ""),
        db_pool_min=int(os.getenv("DB_POOL_MIN", "1")),
        db_pool_max=int(os.getenv("DB_POOL_MAX", "10")),
        db_command_timeout=float(os.getenv("DB_COMMAND_TIMEOUT", "10")),
        sideshift_base_url=os.getenv("SIDESHIFT_BASE_URL", "https://sideshift.ai/api/v2"),
        sideshift_api_key=os.getenv("SIDESHIFT_API_KEY", ""),
        sideshift_client_ip=os.getenv("SIDESHIFT_CLIENT_IP") or None,
        sideshift_timeout_seconds=float(os.getenv("SIDESHIFT_TIMEOUT_SECONDS", "10")),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", "") or os.getenv("BOT_TOKEN", ""),
        tick_interval_seconds=float(os.getenv("ORDER_MONITOR_TICK_SECONDS", "10")),
        max_concurrent_polls=int(os.getenv("ORDER_MONITOR_MAX_CONCURRENT", "5")),
        status_buffer_path=Path(
            os.getenv("STATUS_BUFFER_PATH", str(Path.home() / ".order_status_buffer.jsonl"))
        ).expanduser(),
        status_flush_interval_seconds=float(os.getenv("STATUS_FLUSH_INTERVAL_SECONDS", "60")),
        status_failure_threshold=int(os.getenv("STATUS_FAILURE_THRESHOLD", "3")),
    )
