"""
Tests for settings and emergency switches.
"""
import pytest

from shelfwise.config import FeatureFlags, Settings


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestFeatureFlags:
    """Resolution of feature switches."""

    @pytest.mark.unit
    def test_defaults_enable_everything(self) -> None:
        assert make_settings().feature_flags() == FeatureFlags()

    @pytest.mark.unit
    def test_disable_all(self) -> None:
        flags = make_settings(emergency_disable_all=True).feature_flags()

        assert flags == FeatureFlags.all_disabled()
        assert flags.reserve_on_request is False

    @pytest.mark.unit
    def test_disable_jobs(self) -> None:
        flags = make_settings(emergency_disable_jobs=True).feature_flags()

        assert flags.background_jobs_enabled is False
        assert flags.notifications_enabled is True

    @pytest.mark.unit
    def test_disable_emails(self) -> None:
        flags = make_settings(emergency_disable_emails=True).feature_flags()

        assert flags.notifications_enabled is False
        assert flags.overdue_detection_enabled is True

    @pytest.mark.unit
    def test_disable_new_features(self) -> None:
        flags = make_settings(emergency_disable_new_features=True).feature_flags()

        assert flags.notifications_enabled is False
        assert flags.overdue_detection_enabled is False
        assert flags.idempotency_enabled is True

    @pytest.mark.unit
    def test_flags_are_frozen(self) -> None:
        flags = FeatureFlags()

        with pytest.raises(ValueError):
            flags.notifications_enabled = False

    @pytest.mark.unit
    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EMERGENCY_DISABLE_JOBS", "true")
        monkeypatch.setenv("FEATURE_RESERVE_ON_REQUEST", "false")

        flags = make_settings().feature_flags()

        assert flags.background_jobs_enabled is False
        assert flags.reserve_on_request is False


class TestSettingsValidation:
    """Field validation."""

    @pytest.mark.unit
    def test_log_level_is_normalised(self) -> None:
        assert make_settings(log_level="debug").log_level == "DEBUG"

    @pytest.mark.unit
    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValueError, match="Invalid log level"):
            make_settings(log_level="chatty")

    @pytest.mark.unit
    def test_allowed_origins_list(self) -> None:
        settings = make_settings(allowed_origins="https://a.example, https://b.example")

        assert settings.get_allowed_origins_list() == ["https://a.example", "https://b.example"]

    @pytest.mark.unit
    def test_maintenance_hour_bounds(self) -> None:
        with pytest.raises(ValueError):
            make_settings(maintenance_hour=24)
