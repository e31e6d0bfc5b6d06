import logging
import os
import string
from typing import Optional

from pydantic import BaseModel, model_validator

DEFAULT_SECRET = "dev_secret_change_me"


class Settings(BaseModel):
    database_url: str = "sqlite:///./tampinha.db"
    redis_url: Optional[str] = None
    code_secret: str = DEFAULT_SECRET
    log_level: str = "INFO"

    # QR codes
    code_scheme: str = "tampinha://"
    min_points_value: int = 1
    max_points_value: int = 10
    default_expiry_hours: int = 24
    max_expiry_hours: int = 168
    code_cache_ttl_cap_seconds: int = 7 * 24 * 3600

    # Rewards
    reward_threshold: int = 10
    reward_code_length: int = 8
    reward_alphabet: str = string.ascii_uppercase + string.digits
    reward_validity_days: int = 30
    reward_code_attempts: int = 5
    reward_cache_ttl_cap_seconds: int = 30 * 24 * 3600

    @model_validator(mode="after")
    def _check_bounds(self):
        if not 1 <= self.min_points_value <= self.max_points_value:
            raise ValueError("points bounds must satisfy 1 <= min <= max")
        # a single scan may cross the threshold at most once
        if self.max_points_value > self.reward_threshold:
            raise ValueError("max_points_value cannot exceed reward_threshold")
        if not self.reward_alphabet or self.reward_code_length < 1:
            raise ValueError("reward codes need a non-empty alphabet and length")
        if self.reward_code_attempts < 1:
            raise ValueError("reward_code_attempts must be >= 1")
        return self

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        values = {
            "database_url": os.environ.get("DATABASE_URL", cls.model_fields["database_url"].default),
            "redis_url": os.environ.get("REDIS_URL") or None,
            "code_secret": os.environ.get("QR_CODE_SECRET", DEFAULT_SECRET),
            "log_level": os.environ.get("LOG_LEVEL", "INFO"),
        }
        if "REWARD_THRESHOLD" in os.environ:
            values["reward_threshold"] = int(os.environ["REWARD_THRESHOLD"])
        values.update(overrides)
        return cls(**values)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if settings.code_secret == DEFAULT_SECRET:
        logging.getLogger(__name__).warning("QR_CODE_SECRET not set, using the development secret")
