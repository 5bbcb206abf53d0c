from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    port: int = 4000
    webhook_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("WEBHOOK_URL", "N8N_INCOMING_WEBHOOK", "webhook_url"),
    )
    api_key: str = ""
    auto_purge_on_logout: bool = False
    auth_root: str = "auth"

    bridge_url: str = "ws://127.0.0.1:8765"
    bridge_token: str = ""

    business_tz_offset_hours: int = -5
    business_hours_start: int = 8
    business_hours_end: int = 21

    cors_allow_origins: str = "*"
    log_level: str = "INFO"
    outbox_max_send_failures: int = 5

    alert_bot_token: Optional[str] = None
    alert_chat_id: Optional[str] = None

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    def cors_origins(self) -> list[str]:
        origins = [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]
        return origins or ["*"]


settings = Settings()
