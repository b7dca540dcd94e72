"""Configuration for the streaming chat service."""

from __future__ import annotations

from pydantic_settings import BaseSettings

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer the user's questions clearly.\n\n"
    "When explaining:\n"
    "1. Start with the simplest possible explanation\n"
    "2. Highlight the key concepts\n"
    "3. Use concrete everyday examples and analogies\n"
    "4. Point out how the concepts connect\n"
    "5. Finish with a short summary of the core points\n"
    "Avoid jargon unless it is necessary, and explain it when you use it."
)


class Settings(BaseSettings):
    """Environment-based configuration."""

    # Service
    host: str = "0.0.0.0"
    port: int = 8080

    # Inference backend (litellm model string, e.g. "openai/qwen-plus")
    model: str = "openai/qwen-plus"
    api_base: str | None = None
    api_key: str | None = None
    temperature: float = 0.7
    top_p: float = 0.9
    max_output_tokens: int = 4096
    request_timeout_s: float = 120.0

    # Conversation
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_history_tokens: int = 6000       # chars/4 estimate, see chat.compactor

    # Retry policy (total attempts, delay = backoff_base ** attempt)
    max_attempts: int = 3
    backoff_base: float = 2.0

    # Generation limits (seconds)
    generation_timeout_s: float = 180.0  # 3 min hard cap per generation
    stream_idle_timeout_s: float = 120.0  # no chunk for this long = dead stream
    fallback_chunk_delay_s: float = 0.05
    cancel_grace_s: float = 5.0          # max wait for a cancelled task to unwind

    # File storage collaborator: HTTP service when storage_url is set, else local dir
    storage_dir: str = "./data/uploads"
    storage_url: str | None = None

    model_config = {"env_prefix": "STREAMCHAT_", "case_sensitive": False}


settings = Settings()
