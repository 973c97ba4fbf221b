"""Environment-based configuration management for the tiered quota service."""

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, validator

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

UNLIMITED_SETTING = -1

TIER_NAMES = ("free", "pro", "enterprise")
WINDOW_KINDS = ("rolling", "calendar")
FAILURE_MODES = ("open", "closed")


class ActionPolicyConfig(BaseModel):
    """Quota parameters for one metered action, per subscription tier."""

    window_kind: str = Field("rolling", description="rolling or calendar")
    window_seconds: int = Field(86400, description="Rolling window length in seconds")
    free: int = Field(5, description="Max requests per window for the free tier (-1 = unlimited)")
    pro: int = Field(100, description="Max requests per window for the pro tier (-1 = unlimited)")
    enterprise: int = Field(1000, description="Max requests per window for the enterprise tier (-1 = unlimited)")
    count_only_failures: bool = Field(False, description="Count only attempts that end in failure")
    failure_mode: str = Field("closed", description="Behaviour when the counter store is down (open or closed)")

    @validator('window_kind')
    def validate_window_kind(cls, v):
        if v.lower() not in WINDOW_KINDS:
            raise ValueError(f"window_kind must be one of {list(WINDOW_KINDS)}")
        return v.lower()

    @validator('window_seconds')
    def validate_window_seconds(cls, v):
        if v < 1:
            raise ValueError("window_seconds must be at least 1")
        return v

    @validator('free', 'pro', 'enterprise')
    def validate_tier_limit(cls, v):
        if v < UNLIMITED_SETTING:
            raise ValueError("tier limits must be >= 0, or -1 for unlimited")
        return v

    @validator('failure_mode')
    def validate_failure_mode(cls, v):
        if v.lower() not in FAILURE_MODES:
            raise ValueError(f"failure_mode must be one of {list(FAILURE_MODES)}")
        return v.lower()


def default_action_policies() -> Dict[str, ActionPolicyConfig]:
    """Quota defaults for every metered action."""
    fifteen_minutes = 15 * 60
    return {
        "ai_chat": ActionPolicyConfig(
            window_kind="rolling", window_seconds=24 * 3600,
            free=5, pro=100, enterprise=1000,
        ),
        "ai_suggestion": ActionPolicyConfig(
            window_kind="calendar", window_seconds=31 * 24 * 3600,
            free=0, pro=100, enterprise=UNLIMITED_SETTING,
        ),
        "resume_create": ActionPolicyConfig(
            window_kind="rolling", window_seconds=365 * 24 * 3600,
            free=1, pro=UNLIMITED_SETTING, enterprise=UNLIMITED_SETTING,
        ),
        "api_request": ActionPolicyConfig(
            window_kind="rolling", window_seconds=fifteen_minutes,
            free=100, pro=100, enterprise=100,
            failure_mode="open",
        ),
        "auth_attempt": ActionPolicyConfig(
            window_kind="rolling", window_seconds=fifteen_minutes,
            free=5, pro=5, enterprise=5,
            count_only_failures=True,
        ),
    }


class QuotaSettings(BaseModel):
    """Static quota table, keyed by action name."""

    actions: Dict[str, ActionPolicyConfig] = Field(default_factory=default_action_policies)

    @validator('actions')
    def validate_actions(cls, v):
        if not v:
            raise ValueError("at least one metered action must be configured")
        return {name.lower(): policy for name, policy in v.items()}


class StoreConfig(BaseModel):
    """Counter store configuration."""

    backend: str = Field("memory", description="Counter store backend (memory or redis)")
    redis_url: str = Field("redis://localhost:6379/0", description="Redis connection URL")
    key_prefix: str = Field("quota", description="Prefix for counter keys")
    grace_seconds: int = Field(60, description="Extra retention after a window closes")
    compaction_interval: int = Field(300, description="In-memory compaction interval in seconds")
    operation_timeout: float = Field(2.0, description="Redis socket timeout in seconds")

    @validator('backend')
    def validate_backend(cls, v):
        if v.lower() not in ["memory", "redis"]:
            raise ValueError("backend must be 'memory' or 'redis'")
        return v.lower()

    @validator('grace_seconds')
    def validate_grace(cls, v):
        if v < 0:
            raise ValueError("grace_seconds must be >= 0")
        return v

    @validator('compaction_interval')
    def validate_compaction_interval(cls, v):
        if v < 1:
            raise ValueError("compaction_interval must be at least 1")
        return v


class HttpServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = Field("0.0.0.0", description="HTTP server host")
    port: int = Field(8000, description="HTTP server port")
    cors_origins: List[str] = Field(["*"], description="CORS allowed origins")
    trust_forwarded_for: bool = Field(True, description="Use X-Forwarded-For for the client address")

    @validator('port')
    def validate_port(cls, v):
        if not (1 <= v <= 65535):
            raise ValueError("port must be between 1 and 65535")
        return v

    @validator('cors_origins', pre=True)
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field("INFO", description="Log level")
    format: str = Field("text", description="Log format (text or json)")
    structured: bool = Field(True, description="Enable structured logging")

    @validator('level')
    def validate_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return v.upper()

    @validator('format')
    def validate_format(cls, v):
        if v.lower() not in ["text", "json"]:
            raise ValueError("format must be 'text' or 'json'")
        return v.lower()


class MonitoringConfig(BaseModel):
    """Monitoring configuration."""

    enable_metrics: bool = Field(False, description="Enable Prometheus metrics")
    metrics_endpoint: str = Field("/metrics", description="Metrics endpoint path")


class ServiceConfig(BaseModel):
    """Complete service configuration."""

    environment: str = Field("production", description="Environment name")
    app_version: str = Field("0.1.0", description="Application version")

    # Sub-configurations
    http: HttpServerConfig
    logging: LoggingConfig
    monitoring: MonitoringConfig
    store: StoreConfig
    quotas: QuotaSettings

    @validator('environment')
    def validate_environment(cls, v):
        valid_envs = ["development", "staging", "production", "test"]
        if v.lower() not in valid_envs:
            raise ValueError(f"environment must be one of {valid_envs}")
        return v.lower()


def _get_env(key: str, default=None, type_func=str):
    """Read an environment variable, converting it with type_func."""
    value = os.getenv(key, default)
    if value is None:
        return default
    if type_func is bool:
        if isinstance(value, bool):
            return value
        return str(value).lower() in ('true', '1', 'yes', 'on')
    return type_func(value)


def load_quota_settings() -> QuotaSettings:
    """
    Build the quota table from defaults, an optional JSON file and env overrides.

    QUOTA_POLICY_FILE points to a JSON object of the form
    ``{"ai_chat": {"window_kind": "rolling", "window_seconds": 86400, "free": 5, ...}}``.
    Individual values can then be overridden with ``QUOTA_<ACTION>_<FIELD>``,
    e.g. ``QUOTA_AI_CHAT_PRO=200`` or ``QUOTA_AUTH_ATTEMPT_WINDOW_SECONDS=600``.
    """
    raw: Dict[str, Dict] = {
        name: policy.dict() for name, policy in default_action_policies().items()
    }

    policy_file = os.getenv("QUOTA_POLICY_FILE")
    if policy_file:
        with open(policy_file, "r", encoding="utf-8") as fh:
            file_policies = json.load(fh)
        for name, values in file_policies.items():
            raw.setdefault(name.lower(), {}).update(values)

    for name, values in raw.items():
        prefix = f"QUOTA_{name.upper()}_"
        for tier in TIER_NAMES:
            override = _get_env(prefix + tier.upper(), None, int)
            if override is not None:
                values[tier] = override
        window_seconds = _get_env(prefix + "WINDOW_SECONDS", None, int)
        if window_seconds is not None:
            values["window_seconds"] = window_seconds
        window_kind = _get_env(prefix + "WINDOW_KIND")
        if window_kind is not None:
            values["window_kind"] = window_kind
        failure_mode = _get_env(prefix + "FAILURE_MODE")
        if failure_mode is not None:
            values["failure_mode"] = failure_mode

    return QuotaSettings(
        actions={name: ActionPolicyConfig(**values) for name, values in raw.items()}
    )


def load_config() -> ServiceConfig:
    """Load configuration from environment variables."""
    try:
        config = ServiceConfig(
            environment=_get_env("ENVIRONMENT", "production"),
            app_version=_get_env("APP_VERSION", "0.1.0"),

            http=HttpServerConfig(
                host=_get_env("QUOTA_HTTP_HOST", "0.0.0.0"),
                port=_get_env("QUOTA_HTTP_PORT", 8000, int),
                cors_origins=_get_env("QUOTA_CORS_ORIGINS", "*"),
                trust_forwarded_for=_get_env("QUOTA_TRUST_FORWARDED_FOR", True, bool),
            ),

            logging=LoggingConfig(
                level=_get_env("LOG_LEVEL", "INFO"),
                format=_get_env("LOG_FORMAT", "text"),
                structured=_get_env("STRUCTURED_LOGGING", True, bool),
            ),

            monitoring=MonitoringConfig(
                enable_metrics=_get_env("ENABLE_METRICS", False, bool),
                metrics_endpoint=_get_env("METRICS_ENDPOINT", "/metrics"),
            ),

            store=StoreConfig(
                backend=_get_env("QUOTA_STORE_BACKEND", "memory"),
                redis_url=_get_env("REDIS_URL", "redis://localhost:6379/0"),
                key_prefix=_get_env("QUOTA_KEY_PREFIX", "quota"),
                grace_seconds=_get_env("QUOTA_GRACE_SECONDS", 60, int),
                compaction_interval=_get_env("QUOTA_COMPACTION_INTERVAL", 300, int),
                operation_timeout=_get_env("QUOTA_STORE_TIMEOUT", 2.0, float),
            ),

            quotas=load_quota_settings(),
        )

        logger.info(f"Configuration loaded successfully for environment: {config.environment}")
        return config

    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise


# Global configuration instance
_config: Optional[ServiceConfig] = None


def get_config() -> ServiceConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> ServiceConfig:
    """Reload configuration from environment variables."""
    global _config
    _config = load_config()
    return _config


def validate_config_file(config_path: str) -> bool:
    """Validate a .env style configuration file."""
    try:
        if Path(config_path).exists():
            from dotenv import dotenv_values
            config_values = dotenv_values(config_path)

            # Temporarily set environment variables
            original_env = {}
            for key, value in config_values.items():
                original_env[key] = os.getenv(key)
                os.environ[key] = value

            try:
                load_config()
                logger.info(f"Configuration file {config_path} is valid")
                return True
            finally:
                # Restore original environment
                for key, value in original_env.items():
                    if value is None:
                        os.environ.pop(key, None)
                    else:
                        os.environ[key] = value
        else:
            logger.error(f"Configuration file {config_path} does not exist")
            return False

    except Exception as e:
        logger.error(f"Configuration file {config_path} is invalid: {e}")
        return False
