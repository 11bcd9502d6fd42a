"""Configuration settings for the ingest service."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from athlete_ally_pipeline.event_bus.config import EventBusConfig
from athlete_ally_pipeline.shared.config import (
    HealthConfig,
    LoggingConfig,
    RetryConfig,
    TelemetryConfig,
    apply_env_overrides,
    load_yaml_config,
)


OURA_DEFAULT_SCOPE = "personal,heartrate,heartrate_daily,workout,activity,tag,userbasic,offline_access"


class OuraConfig(BaseModel):
    """Oura webhook and OAuth configuration."""
    webhook_secret: Optional[str] = Field(default=None, description="HMAC secret for webhook signatures")
    oauth_enabled: bool = Field(default=False, description="Mount the /auth/oura routes")
    client_id: Optional[str] = Field(default=None, description="OAuth client ID")
    client_secret: Optional[str] = Field(default=None, description="OAuth client secret")
    redirect_uri: Optional[str] = Field(default=None, description="OAuth redirect URI")
    scope: str = Field(default=OURA_DEFAULT_SCOPE, description="Requested OAuth scopes")
    authorize_url: str = Field(default="https://cloud.ouraring.com/oauth/authorize")
    token_url: str = Field(default="https://api.ouraring.com/oauth/token")
    state_ttl_seconds: int = Field(default=600, gt=0, description="OAuth state lifetime")
    request_timeout_seconds: float = Field(default=10.0, gt=0, description="Token exchange timeout")


class WebhookConfig(BaseModel):
    """Inbound webhook handling."""
    vendors: List[str] = Field(default=["oura"], description="Vendors accepted on /webhooks/{vendor}")
    idempotency_ttl_seconds: int = Field(default=600, ge=0, description="Duplicate delivery window")
    max_tracked_keys: int = Field(default=100000, gt=0, description="Idempotency keys kept in memory")


class TokenStoreConfig(BaseModel):
    """Vendor token storage."""
    backend: str = Field(default="memory", description="Token store backend: memory or postgres")
    encryption_key: Optional[str] = Field(default=None, description="Base64 AES-256 key")
    database_url: Optional[str] = Field(default=None, description="Postgres DSN for the postgres backend")

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        v = v.strip().lower()
        if v not in ['memory', 'postgres']:
            raise ValueError("Token store backend must be 'memory' or 'postgres'")
        return v


class IngestSettings(BaseSettings):
    """Main ingest service settings."""

    service_name: str = Field(default="ingest-service", description="Service name")

    event_bus: EventBusConfig = Field(default_factory=EventBusConfig)
    oura: OuraConfig = Field(default_factory=OuraConfig)
    webhooks: WebhookConfig = Field(default_factory=WebhookConfig)
    token_store: TokenStoreConfig = Field(default_factory=TokenStoreConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    health: HealthConfig = Field(default_factory=lambda: HealthConfig(port=4101))
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    model_config = SettingsConfigDict(
        env_prefix="INGEST_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    def webhook_secrets(self) -> Dict[str, Optional[str]]:
        """Configured webhook vendors and their signing secrets."""
        secrets = {vendor: None for vendor in self.webhooks.vendors}
        if 'oura' in secrets:
            secrets['oura'] = self.oura.webhook_secret
        return secrets


ENV_OVERRIDES = {
    'NATS_URL': ('event_bus', 'nats_url'),
    'EVENT_STREAM_MODE': ('event_bus', 'stream_mode'),
    'APP_ENV': ('event_bus', 'environment'),
    'FEATURE_SERVICE_MANAGES_STREAMS': ('event_bus', 'manage_streams'),
    'ENABLE_SCHEMA_VALIDATION': ('event_bus', 'validation', 'enabled'),
    'SCHEMA_CACHE_SIZE': ('event_bus', 'validation', 'cache_size'),
    'SCHEMA_CACHE_TTL_MS': ('event_bus', 'validation', 'cache_ttl_ms'),
    'OURA_WEBHOOK_SECRET': ('oura', 'webhook_secret'),
    'OURA_OAUTH_ENABLED': ('oura', 'oauth_enabled'),
    'OURA_CLIENT_ID': ('oura', 'client_id'),
    'OURA_CLIENT_SECRET': ('oura', 'client_secret'),
    'OURA_REDIRECT_URI': ('oura', 'redirect_uri'),
    'OURA_SCOPES': ('oura', 'scope'),
    'OURA_IDEMPOTENCY_TTL_SECONDS': ('webhooks', 'idempotency_ttl_seconds'),
    'TOKEN_STORE_BACKEND': ('token_store', 'backend'),
    'TOKEN_ENCRYPTION_KEY': ('token_store', 'encryption_key'),
    'DATABASE_URL': ('token_store', 'database_url'),
    'PORT': ('health', 'port'),
    'LOG_LEVEL': ('logging', 'level'),
    'LOG_FORMAT': ('logging', 'format'),
    'TRACER': ('telemetry', 'tracer'),
}


def load_settings(config_file: Optional[str] = None) -> IngestSettings:
    """
    Load settings from a YAML file and environment variables.

    Raises:
        FileNotFoundError: If config_file is given but doesn't exist
        ValueError: If a required ${VAR} is missing or a value is invalid
    """
    config_data = load_yaml_config(config_file)
    config_data = apply_env_overrides(config_data, ENV_OVERRIDES)
    return IngestSettings(**config_data)
