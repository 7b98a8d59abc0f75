"""
HTTP settings for the DualStore API.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class HttpSettings(BaseSettings):
    """HTTP layer configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, description="Bind port")

    cors_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins",
    )

    # OUTBOX_CRON_SECRET takes precedence over CRON_SECRET
    outbox_cron_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OUTBOX_CRON_SECRET", "CRON_SECRET", "outbox_cron_secret"),
        description="Bearer token for internal outbox endpoints",
    )

    operator_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DUALSTORE_OPERATOR_TOKEN", "operator_token"),
        description="Bearer token for conflict endpoints",
    )

    default_actor: str = Field(default="api:anonymous", description="Actor when X-Actor is absent")

    model_config = SettingsConfigDict(env_prefix="DUALSTORE_HTTP_", populate_by_name=True)

    @property
    def has_cron_secret(self) -> bool:
        return bool(self.outbox_cron_secret and self.outbox_cron_secret.strip())

    @property
    def has_operator_token(self) -> bool:
        return bool(self.operator_token and self.operator_token.strip())
