import json
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Segmentation CRM Backend"
    env: str = "dev"
    log_level: str = "INFO"
    secret_key: str
    access_token_expire_minutes: int = 60
    jwt_issuer: str | None = None
    jwt_audience: str | None = None

    # DATABASE
    database_url: str = "sqlite+aiosqlite:///./crm.db"
    db_create_all: bool = True
    db_echo: bool = False
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # SEGMENTATION
    empty_rule_group_matches: bool = True
    rule_tree_max_depth: int = Field(default=8, ge=1, le=64)
    audience_eval_yield_every: int = Field(default=500, ge=1)

    # DISPATCH
    dispatch_batch_size: int = Field(default=10, ge=1, le=1000)
    dispatch_batch_delay_seconds: float = Field(default=0.1, ge=0, le=60)
    messaging_provider_default: str = "simulated"
    messaging_simulated_success_rate: float = Field(default=0.9, ge=0, le=1)
    messaging_simulated_seed: int | None = None

    # AI
    ai_provider: str = "stub"
    ai_model: str = "gpt-4o"
    ai_temperature: float = 0.2
    ai_max_prompt_chars: int = Field(default=1000, ge=1)
    openai_api_key: str | None = None
    openai_base_url: str | None = None

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator("openai_api_key", "openai_base_url", "jwt_issuer", "jwt_audience", mode="before")
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        weak_secrets = {"", "change_me", "dev-secret-key-change-before-prod"}
        if self.secret_key.strip() in weak_secrets or len(self.secret_key.strip()) < 32:
            raise ValueError("SECRET_KEY must be a strong random value in production")

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        if self.ai_provider.strip().lower() == "openai" and not self.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when AI_PROVIDER=openai in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
