"""Configuration management using Pydantic BaseSettings.

This module provides centralized configuration management with validation,
type safety, and sensible defaults for the deduplication engine. Every field
can be overridden through a ``DEDUP_``-prefixed environment variable or a
``.env`` file.
"""
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Config(BaseSettings):
    """Main configuration class for the engine."""

    # Store Configuration
    store_backend: str = Field("memory", description="Key/value store backend: redis or memory")
    redis_url: str = Field("redis://localhost:6379", description="Redis connection URL")
    store_key_prefix: str = Field("dedup:", description="Prefix applied to every store key")
    store_max_memory_entries: int = Field(0, ge=0, description="Max memory store entries (0=unbounded)")
    store_local_cache_size: int = Field(10000, ge=0, description="In-process read cache entries (0=disabled)")
    duplicate_ttl_seconds: int = Field(0, ge=0, description="TTL for duplicate records (0=never expires)")
    rule_ttl_seconds: int = Field(0, ge=0, description="TTL for matching rules and strategies")
    workflow_ttl_seconds: int = Field(0, ge=0, description="TTL for resolution workflows")
    job_ttl_seconds: int = Field(0, ge=0, description="TTL for batch jobs")
    backup_ttl_seconds: int = Field(86400, ge=60, description="TTL for pre-merge backups")
    metrics_ttl_seconds: int = Field(3600, ge=0, description="TTL for metrics snapshots")

    # Metrics & Health
    metrics_interval_seconds: float = Field(1800, gt=0, description="Metrics recompute interval")
    metrics_auto_start: bool = Field(False, description="Start the metrics timer on initialize()")
    health_max_pending_workflows: int = Field(100, ge=0, description="Pending workflows before degraded")
    health_max_active_jobs: int = Field(10, ge=0, description="Active batch jobs before degraded")

    # Batch Detection
    default_batch_size: int = Field(100, ge=1, le=10000, description="Records per batch chunk")
    default_max_concurrency: int = Field(5, ge=1, le=100, description="Concurrent detections per job")
    max_batch_runtime_seconds: float = Field(0, ge=0, description="Job runtime guard (0=no limit)")
    recently_processed_window_seconds: int = Field(3600, ge=0, description="Skip window for recently processed records")

    # Workflows
    workflow_fail_on_step_failure: bool = Field(False, description="Fail the whole workflow when a step fails")
    workflow_execute_merge_step: bool = Field(True, description="Run the merge when a merge step is advanced")

    # Engine behavior
    event_queue_size: int = Field(1000, ge=1, description="Default subscriber queue size")
    seed_default_rules: bool = Field(True, description="Seed standard rules/strategies on an empty store")

    # Logging Configuration
    log_level: str = Field("INFO", description="Logging level")

    # DogStatsD (self-observability)
    statsd_enabled: bool = Field(False, description="Emit DogStatsD metrics")
    statsd_host: str = Field("localhost", description="DogStatsD agent host")
    statsd_port: int = Field(8125, ge=1, le=65535, description="DogStatsD agent port")
    metrics_prefix: str = Field("dedup", description="Metric namespace")

    model_config = {
        "env_prefix": "DEDUP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }

    @field_validator('store_backend')
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        if v.lower() not in ['redis', 'memory']:
            raise ValueError('store_backend must be "redis" or "memory"')
        return v.lower()

    @field_validator('log_level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Invalid log level: {v}. Valid options: {valid_levels}')
        return v.upper()

    def validate_configuration(self) -> List[str]:
        """Validate the complete configuration and return any issues."""
        issues = []

        if self.store_backend == "redis" and not self.redis_url.startswith(("redis://", "rediss://")):
            issues.append("DEDUP_REDIS_URL must be a valid Redis URL (redis://...)")

        if self.store_backend == "memory" and self.store_max_memory_entries:
            issues.append("DEDUP_STORE_MAX_MEMORY_ENTRIES evicts records; the memory store is the source of truth")

        if 0 < self.duplicate_ttl_seconds < 3600:
            issues.append("DEDUP_DUPLICATE_TTL_SECONDS is very low, duplicate audit trail will expire quickly")

        if self.default_max_concurrency > self.default_batch_size:
            issues.append("DEDUP_DEFAULT_MAX_CONCURRENCY exceeds DEDUP_DEFAULT_BATCH_SIZE, extra workers stay idle")

        if self.metrics_ttl_seconds and self.metrics_ttl_seconds < self.metrics_interval_seconds:
            issues.append("DEDUP_METRICS_TTL_SECONDS is shorter than the recompute interval, snapshots will expire between runs")

        return issues

    def log_configuration(self) -> None:
        """Log the current configuration (sanitized)."""
        from dedup_engine.utils.logger import log_info

        log_info("Configuration loaded",
                 store_backend=self.store_backend,
                 default_batch_size=self.default_batch_size,
                 default_max_concurrency=self.default_max_concurrency,
                 max_batch_runtime_seconds=self.max_batch_runtime_seconds,
                 metrics_interval_seconds=self.metrics_interval_seconds,
                 workflow_fail_on_step_failure=self.workflow_fail_on_step_failure,
                 statsd_enabled=self.statsd_enabled,
                 log_level=self.log_level)


# Global configuration instance (lazy loading)
_config = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """Reload configuration from environment variables."""
    global _config
    _config = Config()
    return _config
