"""
Configuration management using Pydantic Settings.
Loads all environment variables with validation.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses .env file in development, environment variables in production.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # AI reply source
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key for companion replies"
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI chat model used for companion replies"
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1/chat/completions",
        description="Chat completions endpoint"
    )
    openai_timeout_s: float = Field(
        default=30.0,
        ge=1.0,
        le=120.0,
        description="Total timeout for a single reply request"
    )

    # Speech providers
    transcription_backend: str = Field(
        default="client",
        description="Transcription provider: client (browser recognition relay) or deepgram"
    )
    synthesis_backend: str = Field(
        default="client",
        description="Synthesis provider: client (browser speech synthesis relay) or elevenlabs"
    )
    deepgram_api_key: Optional[str] = Field(
        default=None,
        description="Deepgram API key, required for the deepgram transcription backend"
    )
    elevenlabs_api_key: Optional[str] = Field(
        default=None,
        description="ElevenLabs API key, required for the elevenlabs synthesis backend"
    )
    elevenlabs_model_id: str = Field(
        default="eleven_multilingual_v2",
        description="ElevenLabs synthesis model"
    )

    # Conversation loop
    wake_phrase: str = Field(
        default="hey kindred",
        min_length=1,
        description="Spoken trigger that turns passive listening into a voice turn"
    )
    silence_timeout_ms: int = Field(
        default=1500,
        ge=200,
        le=10000,
        description="Silence after the last transcript update that ends a turn"
    )
    playback_timeout_s: float = Field(
        default=15.0,
        ge=1.0,
        le=300.0,
        description="Maximum wait for the client to report playback complete"
    )
    default_language: str = Field(
        default="en-US",
        description="BCP-47 language tag used when the user has none"
    )
    default_voice: str = Field(
        default="female-us",
        description="Voice preference id used when the user has none"
    )

    # Chat history
    history_dir: str = Field(
        default="data/history",
        description="Directory holding one JSON chat history file per user"
    )
    history_days: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="Default window for the chat history endpoint"
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, or production"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )

    # Server Settings
    host: str = Field(
        default="0.0.0.0",
        description="Server host address"
    )
    port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="Server port"
    )

    # CORS
    frontend_url: str = Field(
        default="http://localhost:5000",
        description="Frontend URL for CORS"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of the allowed values."""
        allowed = ["development", "staging", "production"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v_lower

    @field_validator("transcription_backend")
    @classmethod
    def validate_transcription_backend(cls, v: str) -> str:
        allowed = ["client", "deepgram"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"transcription_backend must be one of {allowed}")
        return v_lower

    @field_validator("synthesis_backend")
    @classmethod
    def validate_synthesis_backend(cls, v: str) -> str:
        allowed = ["client", "elevenlabs"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"synthesis_backend must be one of {allowed}")
        return v_lower

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"


# Global settings instance
settings = Settings()
