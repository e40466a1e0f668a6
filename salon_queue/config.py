from pydantic_settings import BaseSettings, SettingsConfigDict

from .verification import VerificationPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SALON_QUEUE_", env_file=".env", extra="ignore")

    # arrival verification
    auto_approve_radius_meters: float = 150.0
    max_accuracy_meters: float = 100.0
    max_speed_kmh: float = 150.0

    # lifecycle timers
    grace_period_minutes: float = 15.0
    notify_lead_positions: int = 1
    sweep_interval_seconds: float = 30.0

    # fanout
    replay_buffer_size: int = 256
    subscriber_inbox_size: int = 1024

    # persistence
    store_provider: str = "memory"  # "memory" or "jsonl"
    data_file: str = "./data/queue_entries.jsonl"
    reputation_file: str = "./data/reputation.jsonl"
    persist_retry_attempts: int = 3
    persist_retry_delay_seconds: float = 0.05

    # transport
    mqtt_host: str = "127.0.0.1"
    mqtt_port: int = 1883
    namespace: str = "salons/v1"

    log_level: str = "INFO"

    @property
    def grace_period_seconds(self) -> float:
        return self.grace_period_minutes * 60.0

    def verification_policy(self) -> VerificationPolicy:
        return VerificationPolicy(
            auto_approve_radius_meters=self.auto_approve_radius_meters,
            max_accuracy_meters=self.max_accuracy_meters,
            max_speed_kmh=self.max_speed_kmh,
        )


settings = Settings()
