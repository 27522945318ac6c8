"""Configuration package for the lending engine."""
from .settings import FeatureFlags, LendingPolicy, Settings, get_settings

__all__ = ["FeatureFlags", "LendingPolicy", "Settings", "get_settings"]
