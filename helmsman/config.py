"""Settings via pydantic-settings with HELMSMAN_ env prefix.

The provider API key also reads the unprefixed OPENAI_API_KEY so the same
.env file works for other OpenAI-compatible clients.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MAX_TURNS = 50
MAX_QUALITY_GATE_RETRIES = 3
MAX_AGENT_DEPTH = 3
MAX_CONCURRENT_SUBAGENTS = 3


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HELMSMAN_", env_file=".env")

    log_level: str = "info"

    # Provider
    provider_name: str = "openai"
    api_base_url: str = "http://localhost:11434/v1"
    api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    model: str = "qwen2.5:7b"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    local_num_ctx: int = 32768  # options.num_ctx for local back-ends

    # Retry
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.5  # seconds, doubled per attempt
    retry_max_delay: float = 30.0

    # Agent loop
    max_turns: int = MAX_TURNS
    quality_gate_enabled: bool = False
    max_quality_gate_retries: int = MAX_QUALITY_GATE_RETRIES
    emit_timeout: float = 30.0  # max seconds a single event may wait for the sink

    # Sub-agents
    max_agent_depth: int = MAX_AGENT_DEPTH
    max_concurrent_subagents: int = MAX_CONCURRENT_SUBAGENTS
    context_file_max_chars: int = 5000
    judge_poll_interval: float = 0.5
    judge_timeout: float = 120.0
    subagent_poll_interval: float = 1.0
    subagent_wait_timeout: float = 600.0

    # Tools
    auto_approve: list[str] = Field(default_factory=list)
    allow_all: bool = False

    # Conversation
    conversation_max_tokens: int = 100_000
    compaction_keep_recent: int = 6
    sessions_dir: str = "~/.helmsman/sessions"

    @model_validator(mode="after")
    def _validate_bounds(self) -> "Settings":
        for name in (
            "max_turns",
            "max_quality_gate_retries",
            "max_agent_depth",
            "max_concurrent_subagents",
            "conversation_max_tokens",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.compaction_keep_recent < 1:
            raise ValueError("compaction_keep_recent must be >= 1")
        if self.emit_timeout <= 0:
            raise ValueError("emit_timeout must be > 0")
        return self
