from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Default retry policy applied to step work and section stages."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.0, ge=0)


class GateConfig(BaseModel):
    fail_open: bool = True


class StepsConfig(BaseModel):
    timeout_seconds: float = Field(default=120.0, gt=0)


class PipelineConfig(BaseModel):
    """Document generation settings."""

    lease_seconds: float = Field(default=600.0, gt=0)


class RateLimitConfig(BaseModel):
    enabled: bool = True
    requests: int = Field(default=60, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)


class ApiConfig(BaseModel):
    auth_required: bool = False


class InkflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    retry: RetryConfig = RetryConfig()
    gates: Dict[str, GateConfig] = Field(default_factory=dict)
    steps: StepsConfig = StepsConfig()
    pipeline: PipelineConfig = PipelineConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    api: ApiConfig = ApiConfig()

    def gate_fails_open(self, gate_name: str) -> bool:
        gate = self.gates.get(gate_name)
        return True if gate is None else gate.fail_open


def load_config(path: Optional[str] = None) -> InkflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to INKFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("INKFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = InkflowConfig(**data)
    else:
        config = InkflowConfig()

    env_db_url = os.getenv("INKFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
