from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class ScoringPolicy(BaseModel):
    """
    Tunable constants of the heuristic scorer and the verdict engine.

    Nested values can be overridden through the environment, e.g.
    PYTEST_VERDICT__POLICY__AUTO_PASS_THRESHOLD=95.
    """

    # Signal weights
    high_flakiness_weight: int = 30
    pattern_match_weight: int = 25
    error_seen_before_weight: int = 25
    low_consecutive_failures_weight: int = 15
    low_health_score_weight: int = 10

    # Signal thresholds
    high_flakiness_rate: float = 20.0
    min_passes_for_history: int = 2
    min_pass_ratio: float = 0.3
    consecutive_failures_low: int = 3
    health_score_low: int = 50

    # Verdict thresholds
    high_confidence_score: int = 75
    flaky_threshold: int = 60
    auto_pass_threshold: int = 90
    max_adjustment: int = 20
    strong_disagreement_adjustment: int = -10
    real_bug_score_cap: int = 50


class Settings(BaseSettings):
    """
    Configuration settings for pytest-verdict.

    Values can be overridden by environment variables with PYTEST_VERDICT__ prefix.
    e.g. PYTEST_VERDICT__RETRY_COUNT=2
    """
    model_config = SettingsConfigDict(
        env_prefix="PYTEST_VERDICT__",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = Field(default="pytest-verdict", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")

    # Health computation
    health_window: int = Field(
        default=50,
        description="Number of most recent final attempts used for health statistics."
    )
    recent_window: int = Field(
        default=10,
        description="Number of most recent final attempts used for the recent rates."
    )
    history_limit: int = Field(
        default=10,
        description="Number of recent outcomes considered when scoring a failure."
    )
    similar_errors_limit: int = Field(
        default=5,
        description="Maximum number of cross-test signature matches given to arbitration."
    )
    max_workers: int = Field(
        default=1,
        description="Worker threads used to analyze failures of one pipeline. 1 means sequential."
    )
    policy: ScoringPolicy = Field(default_factory=ScoringPolicy)

    # Arbitration (external text-completion endpoint)
    arbitration_api_key: Optional[str] = Field(
        default=None,
        description="API key of the completion endpoint. Arbitration is disabled when unset."
    )
    arbitration_url: str = Field(
        default="https://api.openai.com/v1/chat/completions",
        description="Chat completion endpoint URL."
    )
    arbitration_model: str = Field(default="gpt-4o-mini", description="Model name sent to the endpoint.")
    arbitration_timeout: float = Field(
        default=10.0,
        description="Timeout in seconds for the single arbitration request."
    )
    arbitration_temperature: float = Field(default=0.1)
    arbitration_max_tokens: int = Field(default=150)
    prompt_cache_ttl: float = Field(
        default=60.0,
        description="Seconds the active prompt template is cached."
    )
    verdict_cache_ttl: float = Field(
        default=60.0,
        description="Seconds a pipeline verdict is memoized by CachedPipelineAnalyzer."
    )

    # Plugin defaults (overridden by CLI options and markers)
    retry_count: int = Field(
        default=0,
        description="Number of retries for failed tests. 0 means disabled."
    )
    repository: Optional[str] = Field(
        default=None,
        description="Repository name used for test identity. Defaults to the rootdir name."
    )
    project_name: str = Field(default="default", description="Project/variant name used for test identity.")
    branch: Optional[str] = Field(
        default=None,
        description="Branch used for skip rules. Falls back to CI detection."
    )
    base_url: Optional[str] = Field(
        default=None,
        description="Base URL of the environment under test, used for skip rules."
    )
    auto_pass: bool = Field(
        default=False,
        description="Turn a failing session into a passing one when the verdict can auto-pass."
    )


def get_settings() -> Settings:
    """Retrieve application settings."""
    return Settings()
