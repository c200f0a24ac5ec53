"""Tests for configuration module."""

import os
import pytest
from pydantic import ValidationError


def test_settings_defaults():
    """Settings have sensible defaults."""
    from ihht.core.config import Settings

    s = Settings()

    assert s.default_user_id == "default_user"
    assert s.tick_interval_seconds == 1.0
    assert s.snapshot_interval_seconds == 10
    assert s.recovery_ttl_seconds == 600
    assert s.reading_batch_size == 50
    assert s.log_level == "INFO"
    assert s.log_to_file is True


def test_settings_from_env():
    """Settings can be overridden via environment variables."""
    os.environ["RECOVERY_TTL_SECONDS"] = "120"
    os.environ["READING_BATCH_SIZE"] = "5"

    try:
        from ihht.core.config import Settings

        s = Settings()

        assert s.recovery_ttl_seconds == 120
        assert s.reading_batch_size == 5
    finally:
        del os.environ["RECOVERY_TTL_SECONDS"]
        del os.environ["READING_BATCH_SIZE"]


def test_settings_validation():
    """Settings validate constraints."""
    from ihht.core.config import Settings

    with pytest.raises(ValidationError):
        Settings(tick_interval_seconds=0)

    with pytest.raises(ValidationError):
        Settings(port=70000)


def test_training_config_loaded_from_yaml():
    """Global training config reflects config/training_config.yaml."""
    from ihht.core.config import training_config

    assert training_config.phases.transition_seconds == 10
    assert training_config.instructions.mask_lift_spo2_floor == 83
    assert training_config.instructions.mask_lift_escalation_spo2 == 80
    assert training_config.instructions.training_band.low == 85
    assert training_config.instructions.calibration_band.high == 93
    assert training_config.progression.default_level == 6
    assert training_config.session_defaults.hypoxic_duration_seconds == 420


def test_load_training_config_partial_file(tmp_path):
    """Missing keys fall back to model defaults."""
    from ihht.core.config import load_training_config

    path = tmp_path / "training_config.yaml"
    path.write_text("phases:\n  transition_seconds: 0\n")

    config = load_training_config(path)

    assert config.phases.transition_seconds == 0
    assert config.instructions.mask_lift_spo2_floor == 83
    assert config.progression.max_increase == 2


def test_load_training_config_missing_file(tmp_path):
    from ihht.core.config import TrainingConfig, load_training_config

    config = load_training_config(tmp_path / "nope.yaml")

    assert config == TrainingConfig()


def test_spo2_band_rejects_inverted_bounds():
    from ihht.core.config import SpO2Band

    with pytest.raises(ValidationError):
        SpO2Band(low=92, high=88)
