"""
Configuration management (SSOT).

This module defines ALL configuration for the reconciliation engine.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Decision constants (tie-break side, confidence floors, penalties) live here
  so they can be tuned without touching the algorithms
- Confidence values are integers in [0, 100]
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


TIE_BREAK_SIDES = ("transaction", "file")


@dataclass
class StoreConfig:
    """Document store settings."""

    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))
    # Maximum number of write operations in one atomic batch
    max_batch_size: int = 500
    # Compare-and-swap attempts before giving up on a contended document
    cas_max_attempts: int = 5


@dataclass
class ResolverConfig:
    """Partner conflict resolution settings.

    tie_break: which side wins when two automatic assignments carry the
    same confidence. The bank statement ("transaction") is the default.
    """

    tie_break: str = "transaction"


@dataclass
class LearningConfig:
    """Pattern learning constants (per pattern kind where they differ)."""

    partner_start_confidence: int = 70
    category_start_confidence: int = 75
    # Boost applied when an equivalent pattern is learned again
    learn_boost: int = 2
    # Penalty when a removed entity was a recorded source of the pattern
    source_removal_penalty: int = 5
    source_removal_floor: int = 50
    # Penalty when a removed entity matches a pattern it was not recorded against
    false_positive_penalty: int = 15
    category_floor: int = 40
    partner_floor: int = 50
    min_word_length: int = 3
    max_pattern_words: int = 3
    # Size cap of manual_removals style false-positive logs
    removal_log_cap: int = 50
    # File source and email search patterns learned from connections
    source_pattern_start_confidence: int = 60
    source_pattern_boost: int = 10
    source_pattern_min_length: int = 2

    def floor_for(self, kind: str) -> int:
        """Get the confidence floor for a pattern kind ("partner" or "category")."""
        return self.category_floor if kind == "category" else self.partner_floor

    def start_confidence_for(self, kind: str) -> int:
        """Get the starting confidence for a pattern kind."""
        if kind == "category":
            return self.category_start_confidence
        return self.partner_start_confidence


@dataclass
class MatchingConfig:
    """Suggestion thresholds for partner and category matching."""

    suggestion_threshold: int = 60
    auto_apply_threshold: int = 89
    partner_match_confidence: int = 89
    combined_match_bonus: int = 15
    max_suggestions: int = 3
    usage_boost_max: int = 10
    no_file_patterns_boost: int = 8


@dataclass
class AutomationConfig:
    """Background worker and job queue settings."""

    # Worker trigger endpoint base URL (POST {worker_url}/api/worker)
    worker_url: str | None = None
    worker_token: str | None = None
    timeout_seconds: int = 30
    # HTTP-level retries for the worker endpoint
    http_retries: int = 2
    # Job-level retries for queue items
    max_retries: int = 3
    # Processing items idle longer than this are swept to failed
    stale_minutes: int = 10
    default_strategies: list[str] = field(
        default_factory=lambda: [
            "partner_files",
            "amount_files",
            "email_invoice",
            "email_attachment",
        ]
    )


@dataclass
class BulkConfig:
    """Limits for bulk and repair operations."""

    max_bulk_items: int = 1000
    repair_batch_size: int = 450


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    bulk: BulkConfig = field(default_factory=BulkConfig)

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.resolver.tie_break not in TIE_BREAK_SIDES:
            errors.append(
                f"resolver.tie_break must be one of {', '.join(TIE_BREAK_SIDES)}"
            )

        if not 0 < self.store.max_batch_size <= 500:
            errors.append("store.max_batch_size must be between 1 and 500")
        if self.store.cas_max_attempts < 1:
            errors.append("store.cas_max_attempts must be >= 1")

        learning = self.learning
        for name in (
            "partner_start_confidence",
            "category_start_confidence",
            "category_floor",
            "partner_floor",
            "source_removal_floor",
        ):
            value = getattr(learning, name)
            if not 0 <= value <= 100:
                errors.append(f"learning.{name} must be between 0 and 100")
        if learning.category_floor >= learning.category_start_confidence:
            errors.append("learning.category_floor must be below category_start_confidence")
        if learning.partner_floor >= learning.partner_start_confidence:
            errors.append("learning.partner_floor must be below partner_start_confidence")
        if learning.removal_log_cap < 1:
            errors.append("learning.removal_log_cap must be >= 1")

        if self.matching.auto_apply_threshold < self.matching.suggestion_threshold:
            errors.append("matching.auto_apply_threshold must be >= suggestion_threshold")

        if self.automation.max_retries < 0:
            errors.append("automation.max_retries must be >= 0")
        if self.automation.stale_minutes <= 0:
            errors.append("automation.stale_minutes must be > 0")

        if self.bulk.repair_batch_size > self.store.max_batch_size:
            errors.append("bulk.repair_batch_size must not exceed store.max_batch_size")

        return errors


def _env_int(name: str, default: int) -> int:
    """Read an integer override from the environment."""
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default  # Keep default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - RECONCILE_DB_PATH
    - RECONCILE_TIE_BREAK (transaction/file)
    - RECONCILE_STALE_MINUTES
    - RECONCILE_MAX_RETRIES
    - WORKER_URL
    - WORKER_TOKEN
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    store_data = data.get("store", {})
    store = StoreConfig(
        state_db_path=Path(
            os.environ.get(
                "RECONCILE_DB_PATH", store_data.get("state_db_path", "data/state.db")
            )
        ),
        max_batch_size=store_data.get("max_batch_size", 500),
        cas_max_attempts=store_data.get("cas_max_attempts", 5),
    )

    resolver_data = data.get("resolver", {})
    resolver = ResolverConfig(
        tie_break=os.environ.get(
            "RECONCILE_TIE_BREAK", resolver_data.get("tie_break", "transaction")
        ),
    )

    learning_data = data.get("learning", {})
    learning_defaults = LearningConfig()
    learning = LearningConfig(
        **{
            name: learning_data.get(name, getattr(learning_defaults, name))
            for name in learning_defaults.__dataclass_fields__
        }
    )

    matching_data = data.get("matching", {})
    matching_defaults = MatchingConfig()
    matching = MatchingConfig(
        **{
            name: matching_data.get(name, getattr(matching_defaults, name))
            for name in matching_defaults.__dataclass_fields__
        }
    )

    automation_data = data.get("automation", {})
    automation = AutomationConfig(
        worker_url=os.environ.get("WORKER_URL", automation_data.get("worker_url")),
        worker_token=os.environ.get("WORKER_TOKEN", automation_data.get("worker_token")),
        timeout_seconds=automation_data.get("timeout_seconds", 30),
        http_retries=automation_data.get("http_retries", 2),
        max_retries=_env_int("RECONCILE_MAX_RETRIES", automation_data.get("max_retries", 3)),
        stale_minutes=_env_int(
            "RECONCILE_STALE_MINUTES", automation_data.get("stale_minutes", 10)
        ),
    )
    if automation_data.get("default_strategies"):
        automation.default_strategies = list(automation_data["default_strategies"])

    bulk_data = data.get("bulk", {})
    bulk = BulkConfig(
        max_bulk_items=bulk_data.get("max_bulk_items", 1000),
        repair_batch_size=bulk_data.get("repair_batch_size", 450),
    )

    config = Config(
        store=store,
        resolver=resolver,
        learning=learning,
        matching=matching,
        automation=automation,
        bulk=bulk,
    )

    errors = config.validate()
    if errors:
        raise ConfigValidationError("; ".join(errors))

    return config


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Receipt reconciliation engine configuration

store:
  state_db_path: "data/state.db"          # SQLite document store
  max_batch_size: 500                      # Max writes per atomic batch
  cas_max_attempts: 5                      # Optimistic concurrency retries

# Partner conflict resolution
resolver:
  tie_break: "transaction"                 # Side winning equal-confidence auto matches

# Pattern learning from user corrections
learning:
  partner_start_confidence: 70
  category_start_confidence: 75
  learn_boost: 2                           # Re-learning an existing pattern
  source_removal_penalty: 5                # Removed entity was a pattern source
  source_removal_floor: 50
  false_positive_penalty: 15               # Removed entity matched an unrelated pattern
  category_floor: 40                       # Category patterns below this are deleted
  partner_floor: 50                        # Partner patterns below this are deleted
  min_word_length: 3
  max_pattern_words: 3
  removal_log_cap: 50                      # Max false-positive entries per partner/category
  source_pattern_start_confidence: 60      # Search patterns learned from connected files
  source_pattern_boost: 10
  source_pattern_min_length: 2

# Suggestion thresholds
matching:
  suggestion_threshold: 60
  auto_apply_threshold: 89
  partner_match_confidence: 89
  combined_match_bonus: 15
  max_suggestions: 3
  usage_boost_max: 10
  no_file_patterns_boost: 8

# Background automation workers and job queues
automation:
  worker_url: null                         # e.g. "http://localhost:3000"
  worker_token: null
  timeout_seconds: 30
  http_retries: 2
  max_retries: 3                           # Job retries before failing
  stale_minutes: 10                        # Processing items older than this are swept
  default_strategies:
    - partner_files
    - amount_files
    - email_invoice
    - email_attachment

bulk:
  max_bulk_items: 1000
  repair_batch_size: 450
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
