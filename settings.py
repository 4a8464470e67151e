"""
Runtime configuration for the settlement service.

Values come from the environment once at startup and are handed to the
services explicitly; nothing in the core reads os.environ on its own.
"""
import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    port: int = 8000
    first_purchase_reward: float = 50.0
    points_per_coin: int = 1
    reward_point_value: float = 1.0
    delivery_flat_rate: float = 0.0
    free_delivery_above: float = 0.0
    strict_status_transitions: bool = True
    outbox_max_attempts: int = 5
    outbox_lease_seconds: float = 300.0
    currency: str = "INR"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            port=int(os.getenv("PORT", 8000)),
            first_purchase_reward=float(os.getenv("FIRST_PURCHASE_REWARD", 50)),
            points_per_coin=int(os.getenv("POINTS_PER_COIN", 1)),
            reward_point_value=float(os.getenv("REWARD_POINT_VALUE", 1.0)),
            delivery_flat_rate=float(os.getenv("DELIVERY_FLAT_RATE", 0)),
            free_delivery_above=float(os.getenv("FREE_DELIVERY_ABOVE", 0)),
            strict_status_transitions=_env_bool("STRICT_STATUS_TRANSITIONS", True),
            outbox_max_attempts=int(os.getenv("OUTBOX_MAX_ATTEMPTS", 5)),
            outbox_lease_seconds=float(os.getenv("OUTBOX_LEASE_SECONDS", 300)),
            currency=os.getenv("CURRENCY", "INR"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
