"""
Configuration settings for the spatialsql query core.
"""

from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings with environment variable support.

    Attributes:
        batch_size: Rows per batch handed to a worker
        max_workers: Worker threads for probe/transform batches
        strict_mode: Abort on the first row-level fault instead of recording it
        use_proj_database: Resolve identifiers missing from the built-in catalog
            against the PROJ authority database
        crs_aliases: Explicit alias rules, alias -> canonical identifier
        transform_tolerance: Declared round-trip tolerance of reprojection
        knn_initial_radius: Starting search radius of planar KNN probes;
            0 derives it from the build side extent
        log_file: Rotating log file written by ``setup_logging``, if any
        json_logs: Write the log file as JSON lines
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="SPATIALSQL_",
    )

    # Execution settings
    batch_size: int = 8192
    max_workers: int = 4
    strict_mode: bool = False

    # CRS settings
    use_proj_database: bool = True
    crs_aliases: Dict[str, str] = {}
    transform_tolerance: float = 1e-6

    # Join settings
    knn_initial_radius: float = 0.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    json_logs: bool = False

    # Environment
    environment: Literal["development", "staging", "production"] = "development"

    @field_validator("batch_size", "max_workers")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("crs_aliases")
    @classmethod
    def _lowercase_aliases(cls, value: Dict[str, str]) -> Dict[str, str]:
        return {k.strip().lower(): v.strip().lower() for k, v in value.items()}


# Global settings instance
settings = Settings()
