# config.py
"""Configuration settings for the Marginalia feedback engine.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()


class MarginaliaSettings(BaseSettings):
    """Full configuration for the Marginalia system."""

    # API and Model Configuration
    OPENAI_API_BASE: str = "http://127.0.0.1:8080/v1"
    OPENAI_API_KEY: str = "nope"

    FEEDBACK_MODEL: str = "Qwen3-14B"
    # Model used for the run overview; defaults to FEEDBACK_MODEL.
    SUMMARY_MODEL: str | None = None

    # Temperature Settings
    TEMPERATURE_FEEDBACK: float = 0.7
    TEMPERATURE_SUMMARY: float = 0.5

    # LLM Call Settings
    HTTPX_TIMEOUT: float = 600.0
    MAX_CONCURRENT_LLM_CALLS: int = 4
    MAX_GENERATION_TOKENS: int = 4096
    LLM_TOP_P: float = 0.8
    TIKTOKEN_DEFAULT_ENCODING: str = "cl100k_base"
    FALLBACK_CHARS_PER_TOKEN: float = 4.0
    TOKENIZER_CACHE_SIZE: int = 10

    # Progressive Engine Defaults
    ENGINE_MAX_CONCURRENT: int = 1
    ENGINE_RETRY_ATTEMPTS: int = 3
    ENGINE_BASE_DELAY_SECONDS: float = 2.0
    ENGINE_EXPONENTIAL_BACKOFF: bool = True
    RETRY_SAFETY_MARGIN_SECONDS: float = 1.0
    RETRY_JITTER_RATIO: float = 0.3
    RETRY_MAX_DELAY_SECONDS: float = 60.0
    INTER_ITEM_RETRY_PENALTY_SECONDS: float = 1.0
    BLENDED_DELAY_MULTIPLIER: float = 1.5

    # Summary
    ENABLE_SYNTHESIZED_SUMMARY: bool = True
    SUMMARY_MAX_INPUT_TOKENS: int = 12000

    # Fallback placeholder heuristics
    CHARS_PER_SCREEN_MINUTE: int = 250
    COMPLEX_SECTION_CHARS: int = 2000
    MAJOR_SEQUENCE_CHARS: int = 15000
    DEFAULT_MANTRA: str = "Every word must earn its place on the page."

    # Logging & UI
    LOG_LEVEL_STR: str = Field("INFO", alias="MARGINALIA_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = "marginalia_run.log"
    LOG_DIR: str = "logs"
    ENABLE_RICH_PROGRESS: bool = True

    @model_validator(mode="after")
    def set_dynamic_model_defaults(self) -> MarginaliaSettings:
        if self.SUMMARY_MODEL is None:
            self.SUMMARY_MODEL = self.FEEDBACK_MODEL
        return self

    @model_validator(mode="after")
    def validate_engine_limits(self) -> MarginaliaSettings:
        if self.ENGINE_MAX_CONCURRENT < 1:
            raise ValueError("ENGINE_MAX_CONCURRENT must be at least 1")
        if self.ENGINE_RETRY_ATTEMPTS < 0:
            raise ValueError("ENGINE_RETRY_ATTEMPTS cannot be negative")
        if self.MAX_CONCURRENT_LLM_CALLS < 1:
            raise ValueError("MAX_CONCURRENT_LLM_CALLS must be at least 1")
        if not 0.0 <= self.RETRY_JITTER_RATIO <= 1.0:
            raise ValueError("RETRY_JITTER_RATIO must be between 0 and 1")
        if self.ENGINE_BASE_DELAY_SECONDS < 0:
            raise ValueError("ENGINE_BASE_DELAY_SECONDS cannot be negative")
        return self

    @model_validator(mode="after")
    def warn_placeholder_api_key(self) -> MarginaliaSettings:
        if self.OPENAI_API_KEY == "nope":
            logger.warning(
                "OPENAI_API_KEY is still the placeholder value; provider calls will likely be rejected."
            )
        return self

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")


settings = MarginaliaSettings()
