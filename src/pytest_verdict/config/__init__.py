from pytest_verdict.config.settings import ScoringPolicy, Settings, get_settings

__all__ = ["ScoringPolicy", "Settings", "get_settings"]
