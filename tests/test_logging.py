"""
Tests for the structured logging processors.
"""
from typing import Any

import pytest

from shelfwise.config import FeatureFlags, Settings
from shelfwise.monitoring.logging import AppContext, disabled_features, mask_email, mask_recipient


class TestEmailMasking:
    """Borrower addresses never reach the log stream in clear."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "address,expected",
        [
            ("ada@example.com", "a***@example.com"),
            ("b@library.org", "b***@library.org"),
            ("not-an-email", "not-an-email"),
            ("@example.com", "@example.com"),
        ],
    )
    def test_mask_email(self, address: str, expected: str) -> None:
        assert mask_email(address) == expected

    @pytest.mark.unit
    def test_processor_masks_recipient_fields_only(self) -> None:
        event = {
            "event": "notification_logged",
            "recipient": "ada@example.com",
            "book_title": "Dune",
        }

        result = mask_recipient(None, "info", event)

        assert result["recipient"] == "a***@example.com"
        assert result["book_title"] == "Dune"


class TestAppContext:
    """Process context added to each event."""

    @pytest.mark.unit
    def test_adds_app_name_and_env(self, test_settings: Settings) -> None:
        processor = AppContext(test_settings, FeatureFlags())

        event = processor(None, "info", {"event": "borrow_request_created"})

        assert event["app_name"] == test_settings.app_name
        assert event["app_env"] == test_settings.app_env
        assert "degraded" not in event

    @pytest.mark.unit
    def test_lists_disabled_switches(self, test_settings: Settings) -> None:
        flags = FeatureFlags(notifications_enabled=False, audit_logging_enabled=False)

        event = AppContext(test_settings, flags)(None, "info", {"event": "x"})

        assert event["degraded"] == ["audit_logging_enabled", "notifications_enabled"]

    @pytest.mark.unit
    def test_event_fields_win_over_context(self, test_settings: Settings) -> None:
        event: Any = AppContext(test_settings)(None, "info", {"event": "x", "app_env": "override"})

        assert event["app_env"] == "override"

    @pytest.mark.unit
    def test_emergency_override_disables_everything(self) -> None:
        assert disabled_features(FeatureFlags.all_disabled()) == sorted(FeatureFlags().model_dump())
