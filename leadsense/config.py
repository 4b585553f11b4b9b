import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class EngineSettings:
    follow_up_window: timedelta = timedelta(days=4)
    max_follow_ups: int = 4
    ai_max_attempts: int = 5
    provider_timeout_seconds: float = 90.0
    lease_ttl: timedelta = timedelta(minutes=15)
    batch_interval_minutes: int = 60
    template_dir: Path = Path(__file__).parent / "templates"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            follow_up_window=timedelta(days=_float_env("FOLLOW_UP_WINDOW_DAYS", 4)),
            max_follow_ups=_int_env("MAX_FOLLOW_UPS", 4),
            ai_max_attempts=_int_env("AI_MAX_ATTEMPTS", 5),
            provider_timeout_seconds=_float_env("AI_PROVIDER_TIMEOUT_SECONDS", 90.0),
            lease_ttl=timedelta(minutes=_float_env("LEAD_LEASE_MINUTES", 15)),
            batch_interval_minutes=_int_env("FOLLOW_UP_INTERVAL_MINUTES", 60),
            template_dir=Path(os.getenv("FOLLOW_UP_TEMPLATE_DIR", str(cls.template_dir))),
        )
