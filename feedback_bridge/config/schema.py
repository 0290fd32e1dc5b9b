"""Configuration schema using Pydantic."""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PollingConfig(BaseModel):
    """Idle-ping cadence for a session (seconds)."""
    auto_start: bool = True
    initial_delay: float = Field(default=2.0, gt=0)
    normal_interval: float = Field(default=5.0, gt=0)
    idle_interval: float = Field(default=30.0, gt=0)
    max_interval: float = Field(default=60.0, gt=0)
    activity_threshold: float = Field(default=60.0, gt=0)  # seconds that still count as "recent"


class HybridConfig(BaseModel):
    """Webhook-with-polling-backup behaviour (seconds)."""
    webhook_timeout: float = Field(default=5.0, ge=1.0)
    fallback_after_failures: int = Field(default=3, ge=1)
    health_check_interval: float = Field(default=300.0, gt=0)


class CadenceConfig(BaseModel):
    """Question/answer polling cadence (seconds)."""
    intensive_interval: float = 3.0
    intensive_duration: float = 60.0
    pause_interval: float = 15.0
    min_call_interval: float = 1.0  # spacing between fetch calls, regardless of rate limits
    error_retry_delay: float = 5.0
    health_initial_delay: float = 30.0  # first webhook health check after entering hybrid


class SlackConfig(BaseModel):
    """Slack Web API access."""
    bot_token: str = ""
    bot_user_id: str = ""  # resolved via auth.test when empty
    api_base: str = "https://slack.com/api"
    timeout_seconds: float = 15.0
    max_rate_limit_retries: int = 3


class RelayConfig(BaseModel):
    """Hosted response relay that stores webhook replies for pull."""
    enabled: bool = False
    url: str = ""
    timeout_seconds: float = 10.0


class WebhookConfig(BaseModel):
    """Local webhook listener."""
    host: str = "127.0.0.1"
    port_min: int = 3000
    port_max: int = 4000
    health_timeout_seconds: float = 5.0


class LoggingConfig(BaseModel):
    """Log sinks."""
    level: str = "INFO"
    file: str = ""  # empty = stderr only


class Config(BaseSettings):
    """Root configuration for Feedback Bridge."""
    slack: SlackConfig = Field(default_factory=SlackConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    cadence: CadenceConfig = Field(default_factory=CadenceConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    hybrid: HybridConfig = Field(default_factory=HybridConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="FEEDBACK_BRIDGE_",
        env_nested_delimiter="__",
    )
