"""Configuration schema using Pydantic."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

NOTIFY_MODES = ("quiet", "normal", "debug")

DEFAULT_EXECUTE_POLICY_PROMPT = (
    "Execution policy: act directly in the working directory. Run the commands, "
    "edit the files and verify the result yourself instead of only describing a plan. "
    "Ask the user only when an action is destructive or the request is ambiguous.\n\n"
    "User request:\n"
)


class FeishuConfig(BaseModel):
    """Feishu/Lark channel configuration (event webhook + REST API)."""

    enabled: bool = False
    app_id: str = ""
    app_secret: str = ""
    verification_token: str = ""
    encrypt_key: str = ""
    api_base: str = "https://open.feishu.cn/open-apis"
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 3000
    webhook_path: str = "/webhook/event"
    request_timeout_s: float = 30.0
    allow_from: list[str] = Field(default_factory=list)  # Allowed open_ids
    bot_aliases: list[str] = Field(default_factory=lambda: ["opencode", "bot", "机器人"])


class AgentConfig(BaseModel):
    """External agent process configuration."""

    path: str = "opencode"
    working_dir: str = ""  # Empty means the bridge's current directory
    max_concurrent: int = Field(default=5, ge=1)
    idle_timeout_s: float = 300.0  # <= 0 disables the no-progress watchdog
    hard_timeout_s: float = 0.0  # <= 0 disables the wall-clock ceiling
    kill_grace_s: float = 5.0
    model: str | None = None
    auto_detect_model: bool = True
    models_timeout_s: float = 20.0
    intent_routing_enabled: bool = True
    intent_timeout_s: float = 8.0
    intent_confidence: float = 0.75
    progress_status_only: bool = True
    max_task_store: int = Field(default=500, ge=1)


class ResponseConfig(BaseModel):
    """How task lifecycle is relayed back into chat."""

    streaming_enabled: bool = True
    streaming_interval_s: float = 5.0  # debug progress flush interval
    normal_progress_interval_s: float = 480.0
    result_card_enabled: bool = True
    concise_result_default: bool = True
    card_dedup_threshold: float = 0.8
    default_notify_mode: Literal["quiet", "normal", "debug"] = "quiet"
    execute_first_default: bool = True
    execute_policy_prompt: str = ""
    progress_max_lines: int = 5
    card_detail_budget: int = 2800
    message_max_len: int = 4000

    @field_validator("card_dedup_threshold", mode="before")
    @classmethod
    def _clamp_threshold(cls, v: object) -> float:
        try:
            value = float(v)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0.8
        if value != value:  # NaN
            return 0.8
        return min(1.0, max(0.0, value))

    @field_validator("default_notify_mode", mode="before")
    @classmethod
    def _coerce_notify_mode(cls, v: object) -> str:
        value = str(v or "").strip().lower()
        return value if value in NOTIFY_MODES else "quiet"

    @property
    def policy_prompt(self) -> str:
        return self.execute_policy_prompt.replace("\\n", "\n") or DEFAULT_EXECUTE_POLICY_PROMPT


class SessionConfig(BaseModel):
    """In-memory session registry limits."""

    max_history: int = Field(default=20, ge=1)
    max_pending_files: int = Field(default=5, ge=1)


class SecurityConfig(BaseModel):
    require_mention: bool = True


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str | None = None
    rotation: str = "10 MB"


class Config(BaseSettings):
    """Root configuration for ocbridge."""

    model_config = SettingsConfigDict(
        env_prefix="OCBRIDGE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    feishu: FeishuConfig = Field(default_factory=FeishuConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    response: ResponseConfig = Field(default_factory=ResponseConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
