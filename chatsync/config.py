from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_delays(raw: str) -> list[float]:
    delays: list[float] = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            try:
                delays.append(float(part))
            except ValueError:
                continue
    return delays or [1.0]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = "sqlite+aiosqlite:///./data/chatsync.db"

    stale_waiting_minutes: int = 10
    cleanup_interval_min: int = 15
    arbitration_interval_sec: int = 30

    heartbeat_interval_sec: int = 30
    heartbeat_degraded_ms: int = 1000
    heartbeat_missed_limit: int = 2
    polling_fallback_sec: int = 5

    phone_call_ttl_minutes: int = 5

    operation_retries: int = 3
    operation_retry_delays: str = "1,2,4"
    realtime_reconnect_delays: str = "1,2,4,8,16,30"
    subscription_queue_size: int = 256

    bot_token: str | None = None
    notify_chat_ids: str = ""

    @property
    def retry_delays(self) -> list[float]:
        return _parse_delays(self.operation_retry_delays)

    @property
    def reconnect_delays(self) -> list[float]:
        return _parse_delays(self.realtime_reconnect_delays)

    @property
    def notify_chat_id_set(self) -> set[int]:
        ids: set[int] = set()
        if self.notify_chat_ids:
            for part in self.notify_chat_ids.split(","):
                part = part.strip()
                if part:
                    try:
                        ids.add(int(part))
                    except ValueError:
                        continue
        return ids


settings = Settings()
