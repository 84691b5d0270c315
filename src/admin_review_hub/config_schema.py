"""Hub runtime configuration schema."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

from admin_review_hub.models import OutboundChannel
from admin_review_hub.notifications import NOTIFICATION_LIMIT

CONFIG_SECTION = "review_hub"


class HubConfig(BaseModel):
    """Validated presence, notification and outbound settings."""

    presence_grace_seconds: float = Field(default=30.0, ge=0.0)
    heartbeat_timeout_seconds: float = Field(default=90.0, ge=5.0)
    reaper_interval_seconds: float = Field(default=10.0, ge=1.0)
    notification_limit: int = Field(default=NOTIFICATION_LIMIT, ge=1, le=NOTIFICATION_LIMIT)
    outbound_channels: list[OutboundChannel] = Field(
        default_factory=lambda: [OutboundChannel.EMAIL]
    )

    @field_validator("outbound_channels")
    @classmethod
    def _validate_outbound_channels(cls, value: list[OutboundChannel]) -> list[OutboundChannel]:
        if not value:
            raise ValueError("outbound_channels must name at least one channel")
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def _validate_timeouts(self) -> HubConfig:
        if self.heartbeat_timeout_seconds <= self.presence_grace_seconds:
            raise ValueError(
                "heartbeat_timeout_seconds must be greater than presence_grace_seconds"
            )
        return self


def load_hub_config(config_path: str | Path) -> HubConfig | None:
    """Load the review_hub section of a JSON config file.

    Returns:
    - None when the review_hub section is missing.
    - HubConfig when the section exists and validates.
    Raises:
    - FileNotFoundError if config file is missing.
    - pydantic ValidationError on invalid values.
    - json.JSONDecodeError for malformed JSON.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(path)

    payload = json.loads(path.read_text(encoding="utf-8"))
    section = payload.get(CONFIG_SECTION)
    if section is None:
        return None
    if not isinstance(section, dict):
        raise ValueError(f"{CONFIG_SECTION} must be an object when provided")
    return HubConfig.model_validate(section)
