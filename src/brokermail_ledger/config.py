"""
Configuration management (SSOT).

This module defines ALL configuration for the broker mail pipeline.
All config keys are defined here; no other module should invent config keys.

Policy thresholds are exposed as named constants. Their values are carried
over from the production heuristics and are defaults, not tuned results.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

# ============================================================================
# Policy defaults
# ============================================================================

# Candidates at or above this confidence may be written without review
DEFAULT_AUTO_INSERT_THRESHOLD = 0.6

# Relative quantity/price tolerance for content-similarity duplicates (0.5%)
DEFAULT_SIMILARITY_TOLERANCE = 0.005

# Below this relative difference a content match is treated as identical
DEFAULT_NEAR_EXACT_TOLERANCE = 0.0001

# Pending review items expire after this many days
DEFAULT_REVIEW_SLA_DAYS = 30

DEFAULT_RAPID_TRADING_SECONDS = 300
DEFAULT_PARTIAL_FILL_MINUTES = 30
DEFAULT_SPLIT_ORDER_MINUTES = 120

DEFAULT_WEALTHSIMPLE_DOMAINS = [
    "wealthsimple.com",
    "notifications.wealthsimple.com",
    "trade.wealthsimple.com",
]


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


@dataclass
class LedgerConfig:
    """Portfolio ledger API configuration."""

    base_url: str = "http://localhost:3000"
    token: str = ""
    timeout_seconds: int = 30
    max_retries: int = 3


@dataclass
class ResolverConfig:
    """AI symbol resolver (Ollama) configuration.

    The resolver is optional; when disabled, ambiguous symbols stay
    unresolved and the candidate is routed to review.
    """

    enabled: bool = False
    ollama_url: str = "http://localhost:11434"
    # Format: "Bearer <token>" or "Header-Name: value"
    auth_header: str | None = None
    model: str = "qwen2.5:3b-instruct-q4_K_M"
    # Hard upper bound for one resolution, including waiting for a slot
    timeout_seconds: float = 10.0
    max_concurrent: int = 2


@dataclass
class ParsingConfig:
    """Sender template settings."""

    # Template name -> sender domains recognised for it
    known_senders: dict[str, list[str]] = field(
        default_factory=lambda: {"wealthsimple": list(DEFAULT_WEALTHSIMPLE_DOMAINS)}
    )
    default_currency: str = "CAD"
    # Symbol enhancement is requested below this parser confidence
    enhancement_confidence: float = 0.7


@dataclass
class DuplicateConfig:
    """Duplicate detection tolerances."""

    similarity_tolerance: float = DEFAULT_SIMILARITY_TOLERANCE
    near_exact_tolerance: float = DEFAULT_NEAR_EXACT_TOLERANCE
    # 0 means same calendar day
    date_window_days: int = 0
    # Days of recorded history consulted for content similarity
    lookback_days: int = 7


@dataclass
class TimeWindowConfig:
    """Time-window pattern analysis settings."""

    rapid_trading_seconds: int = DEFAULT_RAPID_TRADING_SECONDS
    partial_fill_minutes: int = DEFAULT_PARTIAL_FILL_MINUTES
    split_order_minutes: int = DEFAULT_SPLIT_ORDER_MINUTES
    partial_fill_price_tolerance: float = 0.05
    split_order_price_tolerance: float = 0.10
    split_order_quantity_tolerance: float = 0.30


@dataclass
class ReviewConfig:
    """Manual review queue settings."""

    sla_days: int = DEFAULT_REVIEW_SLA_DAYS
    escalation_hours: int = 24
    escalation_risk_threshold: float = 0.8
    max_escalation_level: int = 3
    # Total amounts at or above this raise review priority
    large_amount_threshold: float = 10_000.0


@dataclass
class PipelineConfig:
    """Orchestrator settings."""

    auto_insert_threshold: float = DEFAULT_AUTO_INSERT_THRESHOLD
    # Used when the configuration lookup fails or has no answer
    auto_insert_default: bool = True
    # Fingerprint lock lease; must outlast resolver + ledger timeouts
    lock_ttl_seconds: int = 120
    lock_wait_seconds: float = 30.0
    # Account type used when an email names none
    default_account_type: str | None = None


@dataclass
class Config:
    """Application configuration (SSOT)."""

    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    parsing: ParsingConfig = field(default_factory=ParsingConfig)
    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    time_window: TimeWindowConfig = field(default_factory=TimeWindowConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.ledger.base_url:
            errors.append("ledger.base_url is required")

        if self.resolver.enabled:
            if not self.resolver.ollama_url:
                errors.append("resolver.ollama_url is required when the resolver is enabled")
            if self.resolver.timeout_seconds <= 0:
                errors.append("resolver.timeout_seconds must be positive")

        if not 0.0 <= self.pipeline.auto_insert_threshold <= 1.0:
            errors.append("pipeline.auto_insert_threshold must be between 0 and 1")

        if self.duplicates.near_exact_tolerance > self.duplicates.similarity_tolerance:
            errors.append("duplicates.near_exact_tolerance must be <= similarity_tolerance")

        if self.time_window.partial_fill_minutes > self.time_window.split_order_minutes:
            errors.append("time_window.partial_fill_minutes must be <= split_order_minutes")

        if self.review.sla_days < 1:
            errors.append("review.sla_days must be at least 1")

        # The lock must outlive the slowest guarded call
        if self.pipeline.lock_ttl_seconds <= max(
            self.resolver.timeout_seconds, self.ledger.timeout_seconds
        ):
            errors.append("pipeline.lock_ttl_seconds must exceed resolver and ledger timeouts")

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - LEDGER_URL
    - LEDGER_TOKEN
    - BROKERMAIL_RESOLVER_ENABLED (true/false)
    - OLLAMA_URL
    - OLLAMA_MODEL
    - OLLAMA_TIMEOUT (seconds)
    - BROKERMAIL_AUTO_INSERT_THRESHOLD
    - BROKERMAIL_STATE_DB
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    ledger_data = data.get("ledger", {})
    ledger = LedgerConfig(
        base_url=os.environ.get("LEDGER_URL", ledger_data.get("base_url", "http://localhost:3000")),
        token=os.environ.get("LEDGER_TOKEN", ledger_data.get("token", "")),
        timeout_seconds=ledger_data.get("timeout_seconds", 30),
        max_retries=ledger_data.get("max_retries", 3),
    )

    resolver_data = data.get("resolver", {})
    resolver = ResolverConfig(
        enabled=_env_bool("BROKERMAIL_RESOLVER_ENABLED", resolver_data.get("enabled", False)),
        ollama_url=os.environ.get(
            "OLLAMA_URL", resolver_data.get("ollama_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("OLLAMA_AUTH_HEADER", resolver_data.get("auth_header")),
        model=os.environ.get(
            "OLLAMA_MODEL", resolver_data.get("model", "qwen2.5:3b-instruct-q4_K_M")
        ),
        timeout_seconds=float(
            os.environ.get("OLLAMA_TIMEOUT", resolver_data.get("timeout_seconds", 10.0))
        ),
        max_concurrent=resolver_data.get("max_concurrent", 2),
    )

    parsing_data = data.get("parsing", {})
    parsing = ParsingConfig(
        known_senders=parsing_data.get(
            "known_senders", {"wealthsimple": list(DEFAULT_WEALTHSIMPLE_DOMAINS)}
        ),
        default_currency=parsing_data.get("default_currency", "CAD"),
        enhancement_confidence=parsing_data.get("enhancement_confidence", 0.7),
    )

    dup_data = data.get("duplicates", {})
    duplicates = DuplicateConfig(
        similarity_tolerance=dup_data.get("similarity_tolerance", DEFAULT_SIMILARITY_TOLERANCE),
        near_exact_tolerance=dup_data.get("near_exact_tolerance", DEFAULT_NEAR_EXACT_TOLERANCE),
        date_window_days=dup_data.get("date_window_days", 0),
        lookback_days=dup_data.get("lookback_days", 7),
    )

    window_data = data.get("time_window", {})
    time_window = TimeWindowConfig(
        rapid_trading_seconds=window_data.get(
            "rapid_trading_seconds", DEFAULT_RAPID_TRADING_SECONDS
        ),
        partial_fill_minutes=window_data.get("partial_fill_minutes", DEFAULT_PARTIAL_FILL_MINUTES),
        split_order_minutes=window_data.get("split_order_minutes", DEFAULT_SPLIT_ORDER_MINUTES),
        partial_fill_price_tolerance=window_data.get("partial_fill_price_tolerance", 0.05),
        split_order_price_tolerance=window_data.get("split_order_price_tolerance", 0.10),
        split_order_quantity_tolerance=window_data.get("split_order_quantity_tolerance", 0.30),
    )

    review_data = data.get("review", {})
    review = ReviewConfig(
        sla_days=review_data.get("sla_days", DEFAULT_REVIEW_SLA_DAYS),
        escalation_hours=review_data.get("escalation_hours", 24),
        escalation_risk_threshold=review_data.get("escalation_risk_threshold", 0.8),
        max_escalation_level=review_data.get("max_escalation_level", 3),
        large_amount_threshold=review_data.get("large_amount_threshold", 10_000.0),
    )

    pipeline_data = data.get("pipeline", {})
    threshold_env = os.environ.get("BROKERMAIL_AUTO_INSERT_THRESHOLD", "")
    auto_insert_threshold = pipeline_data.get(
        "auto_insert_threshold", DEFAULT_AUTO_INSERT_THRESHOLD
    )
    if threshold_env:
        try:
            auto_insert_threshold = float(threshold_env)
        except ValueError:
            pass  # Keep file/default value

    pipeline = PipelineConfig(
        auto_insert_threshold=auto_insert_threshold,
        auto_insert_default=pipeline_data.get("auto_insert_default", True),
        lock_ttl_seconds=pipeline_data.get("lock_ttl_seconds", 120),
        lock_wait_seconds=pipeline_data.get("lock_wait_seconds", 30.0),
        default_account_type=pipeline_data.get("default_account_type"),
    )

    state_db = os.environ.get("BROKERMAIL_STATE_DB", data.get("state_db_path", "data/state.db"))

    return Config(
        ledger=ledger,
        resolver=resolver,
        parsing=parsing,
        duplicates=duplicates,
        time_window=time_window,
        review=review,
        pipeline=pipeline,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Broker mail → ledger pipeline configuration

ledger:
  base_url: "http://localhost:3000"
  token: "YOUR_LEDGER_TOKEN"
  timeout_seconds: 30
  max_retries: 3

# AI symbol resolver (Ollama). Only consulted for ambiguous symbols.
resolver:
  enabled: false
  ollama_url: "http://localhost:11434"
  auth_header: null
  model: "qwen2.5:3b-instruct-q4_K_M"
  timeout_seconds: 10                      # Hard bound per resolution
  max_concurrent: 2

parsing:
  known_senders:
    wealthsimple:
      - "wealthsimple.com"
      - "notifications.wealthsimple.com"
      - "trade.wealthsimple.com"
  default_currency: "CAD"
  enhancement_confidence: 0.7

duplicates:
  similarity_tolerance: 0.005              # 0.5% quantity/price tolerance
  near_exact_tolerance: 0.0001             # Below this: auto-merge
  date_window_days: 0                      # 0 = same calendar day
  lookback_days: 7

time_window:
  rapid_trading_seconds: 300
  partial_fill_minutes: 30
  split_order_minutes: 120
  partial_fill_price_tolerance: 0.05
  split_order_price_tolerance: 0.10
  split_order_quantity_tolerance: 0.30

review:
  sla_days: 30                             # Pending items expire after this
  escalation_hours: 24
  escalation_risk_threshold: 0.8
  max_escalation_level: 3
  large_amount_threshold: 10000.0

pipeline:
  auto_insert_threshold: 0.6               # At or above: write without review
  auto_insert_default: true                # Used when config lookup fails
  lock_ttl_seconds: 120
  lock_wait_seconds: 30
  default_account_type: null

state_db_path: "data/state.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
