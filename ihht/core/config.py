"""
Application settings management.

Settings are loaded from environment variables with .env file support.
Training parameters (phase timing, instruction thresholds, progression rules)
are loaded from config/training_config.yaml.
All configuration is validated using Pydantic.
"""

from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment.

    Environment variables take precedence over .env file values.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # ==========================================================================
    # Paths
    # ==========================================================================

    config_dir: Path = Field(
        default=Path("config"),
        description="Directory containing YAML configuration files",
    )
    data_dir: Path = Field(
        default=Path("data"), description="Directory for database and other data files"
    )

    # ==========================================================================
    # Database
    # ==========================================================================

    database_path: Path = Field(
        default=Path("data/ihht.db"), description="Path to SQLite database file"
    )

    # ==========================================================================
    # Session Runtime
    # ==========================================================================

    default_user_id: str = Field(
        default="default_user", description="User ID used when the caller gives none"
    )
    tick_interval_seconds: float = Field(
        default=1.0, gt=0, le=10, description="Phase timer tick interval"
    )
    snapshot_interval_seconds: int = Field(
        default=10,
        ge=1,
        description="Seconds of ticking between periodic recovery snapshots",
    )
    recovery_ttl_seconds: int = Field(
        default=600,
        ge=1,
        description="Snapshots older than this are discarded instead of offered",
    )
    reading_batch_size: int = Field(
        default=50, ge=1, le=1000, description="Buffered readings before a flush"
    )

    # ==========================================================================
    # Logging
    # ==========================================================================

    log_sessions_to_keep: int = Field(
        default=5, ge=1, description="Number of per-run log files to retain"
    )
    log_dir: Path = Field(default=Path("logs"), description="Directory for per-run log files")
    log_to_file: bool = Field(default=True, description="Write a per-run log file")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Minimum level for console and file output"
    )

    # ==========================================================================
    # Server Configuration
    # ==========================================================================

    host: str = Field(default="127.0.0.1", description="Server host address")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")


# ============================================================================
# Training Configuration (from YAML)
# ============================================================================


class PhaseTimingConfig(BaseModel):
    """Timing of the untimed equipment changeover between phases."""

    transition_seconds: int = Field(
        default=10,
        ge=0,
        le=120,
        description="Mask on/off changeover duration (0 = no transition phase)",
    )


class SpO2Band(BaseModel):
    """Target SpO2 band for altitude phases."""

    low: int = Field(ge=50, le=100)
    high: int = Field(ge=50, le=100)

    @model_validator(mode="after")
    def check_order(self) -> "SpO2Band":
        if self.low > self.high:
            raise ValueError(f"band low ({self.low}) must not exceed high ({self.high})")
        return self


class InstructionConfig(BaseModel):
    """
    Adaptive instruction trigger configuration.

    Thresholds and windows are configuration so they can be tuned per
    deployment without code changes.
    """

    window_seconds: int = Field(
        default=30, ge=5, le=300, description="Rolling SpO2 window length"
    )
    mask_lift_spo2_floor: int = Field(
        default=83, ge=60, le=95, description="Critical SpO2 floor for mask lift"
    )
    mask_lift_sustain_seconds: int = Field(
        default=5,
        ge=0,
        le=60,
        description="Seconds SpO2 must stay at or below the floor",
    )
    mask_lift_recovery_margin: int = Field(
        default=3,
        ge=0,
        le=15,
        description="SpO2 above floor + margin re-arms the trigger before the cooldown ends",
    )
    mask_lift_cooldown_seconds: int = Field(
        default=15,
        ge=0,
        le=300,
        description="Time after a mask lift before it may fire again while SpO2 stays low",
    )
    mask_lift_escalation_spo2: int = Field(
        default=80,
        ge=50,
        le=95,
        description="SpO2 that escalates to a two-breath lift during the cooldown",
    )
    adjustment_window_seconds: int = Field(
        default=30,
        ge=5,
        le=300,
        description="Window span required before evaluating altitude adjustment",
    )
    adjustment_min_samples: int = Field(
        default=10, ge=1, description="Minimum SpO2 samples in the adjustment window"
    )
    adjustment_step: int = Field(
        default=1, ge=1, le=3, description="Altitude levels per adjustment"
    )
    mask_lifts_before_decrease: int = Field(
        default=2,
        ge=1,
        description="Mask lifts in one altitude phase that force a decrease",
    )
    calibration_band: SpO2Band = Field(
        default_factory=lambda: SpO2Band(low=88, high=93)
    )
    training_band: SpO2Band = Field(default_factory=lambda: SpO2Band(low=85, high=90))
    mask_lift_dismiss_seconds: int = Field(default=5, ge=1)
    altitude_adjustment_dismiss_seconds: int = Field(default=10, ge=1)


class DetrainingConfig(BaseModel):
    """Day thresholds for detraining adjustments (upper bounds, inclusive)."""

    no_change: int = 3
    mild: int = 7
    moderate: int = 14
    significant: int = 30
    reset: int = 60


class ProgressionConfig(BaseModel):
    """Altitude progression rules."""

    default_level: int = Field(default=6, ge=0, le=10)
    min_level: int = Field(default=0, ge=0)
    max_level: int = Field(default=10, le=10)
    max_increase: int = Field(default=2, ge=0)
    max_decrease: int = Field(default=3, ge=0)
    plateau_threshold: int = Field(default=5, ge=2)
    min_sessions_for_trend: int = Field(default=3, ge=1)
    history_limit: int = Field(default=10, ge=1, le=50)
    detraining: DetrainingConfig = Field(default_factory=DetrainingConfig)


class SessionDefaultsConfig(BaseModel):
    """Defaults offered when the caller does not specify a protocol."""

    total_cycles: int = Field(default=3, ge=1)
    hypoxic_duration_seconds: int = Field(default=420, gt=0)
    hyperoxic_duration_seconds: int = Field(default=180, gt=0)


class TrainingConfig(BaseModel):
    """
    Complete training configuration loaded from training_config.yaml.

    Contains every tunable used by the scheduler, the instruction engine and
    the progression engine.
    """

    phases: PhaseTimingConfig = Field(default_factory=PhaseTimingConfig)
    instructions: InstructionConfig = Field(default_factory=InstructionConfig)
    progression: ProgressionConfig = Field(default_factory=ProgressionConfig)
    session_defaults: SessionDefaultsConfig = Field(
        default_factory=SessionDefaultsConfig
    )


def load_training_config(config_path: Optional[Path] = None) -> TrainingConfig:
    """
    Load training configuration from YAML file.

    Args:
        config_path: Path to training_config.yaml. If None, uses default path.

    Returns:
        TrainingConfig with validated settings (defaults if no file is found)

    Raises:
        ValueError: If config validation fails
    """
    if config_path is None:
        # Default path: config/training_config.yaml relative to project root
        project_root = Path(__file__).resolve().parent.parent.parent
        check_path = project_root / "config" / "training_config.yaml"
        if check_path.exists():
            config_path = check_path
        else:
            cwd_config = Path.cwd() / "config" / "training_config.yaml"
            if not cwd_config.exists():
                return TrainingConfig()
            config_path = cwd_config

    config_path = Path(config_path).resolve()

    if not config_path.exists():
        return TrainingConfig()

    with open(str(config_path)) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        return TrainingConfig()

    return TrainingConfig(**config_data)


# Global settings instance
settings = Settings()

# Global training config instance
training_config = load_training_config()
