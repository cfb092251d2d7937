"""
Consensus Engine - Configuration

One frozen, versioned configuration object passed into the gate pipeline,
the scoring engine and the consensus state machine at construction time.
Environment variables override the defaults (see EngineConfig.from_env).
"""
import os
from dataclasses import dataclass, field, replace
from typing import Dict, Optional


CONFIG_VERSION = "2026.10.1"

SECONDS_PER_HOUR = 60 * 60
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR


# =============================================================================
# DEFAULT TABLES
# =============================================================================

# Source weight (max 25). Unknown sources score like AUTOMATED.
DEFAULT_SOURCE_WEIGHTS: Dict[str, float] = {
    "OFFICIAL_REGISTRY": 25,
    "CARRIER_FEED": 20,
    "PROVIDER_PORTAL": 20,
    "CROWDSOURCE": 15,
    "PHONE_CALL": 15,
    "AUTOMATED": 10,
}

# Time-to-live per claim source, in days
DEFAULT_SOURCE_TTL_DAYS: Dict[str, int] = {
    "OFFICIAL_REGISTRY": 365,
    "CARRIER_FEED": 365,
    "PROVIDER_PORTAL": 180,
    "CROWDSOURCE": 180,
    "PHONE_CALL": 180,
    "AUTOMATED": 90,
}

# Freshness threshold per specialty class, in days
DEFAULT_FRESHNESS_DAYS: Dict[str, int] = {
    "MENTAL_HEALTH": 30,   # highest network churn
    "PRIMARY_CARE": 60,
    "SPECIALIST": 60,
    "HOSPITAL_BASED": 90,  # most stable participation
    "OTHER": 60,
}

# Per action-class sliding-window ceilings: (max requests, window seconds)
DEFAULT_RATE_LIMITS: Dict[str, tuple] = {
    "submit-claim": (10, SECONDS_PER_HOUR),
    "submit-vote": (10, SECONDS_PER_HOUR),
    "search": (100, SECONDS_PER_HOUR),
}

# Confidence tier bands, highest first: (minimum score, tier)
DEFAULT_TIER_BANDS = (
    (91, "VERY_HIGH"),
    (76, "HIGH"),
    (51, "MEDIUM"),
    (26, "LOW"),
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class EngineConfig:
    """Every threshold, window and weight used by the engine."""
    version: str = CONFIG_VERSION

    # Storage / collaborators
    database_url: str = f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/consensus_engine"
    redis_url: Optional[str] = None
    counter_timeout_seconds: float = 5.0

    # Identity
    fingerprint_salt: str = "consensus-engine-salt-change-in-production"
    trust_proxy_headers: bool = False

    # Rate limiting
    rate_limits: Dict[str, tuple] = field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))
    counter_fallback_max_requests: int = 5
    counter_fallback_window_seconds: int = SECONDS_PER_HOUR

    # Decoy field
    decoy_field_name: str = "website"

    # Bot scoring
    bot_scoring_enabled: bool = True
    bot_scoring_secret: Optional[str] = None
    bot_scoring_url: str = "https://www.google.com/recaptcha/api/siteverify"
    bot_min_score: float = 0.5
    bot_timeout_seconds: float = 5.0
    bot_fail_mode: str = "open"  # "open" | "closed"
    bot_fallback_max_requests: int = 3
    bot_fallback_window_seconds: int = SECONDS_PER_HOUR

    # Duplicate window
    duplicate_window_seconds: int = 30 * SECONDS_PER_DAY

    # Ledger TTL
    source_ttl_days: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_SOURCE_TTL_DAYS))
    default_ttl_days: int = 180

    # Scoring
    source_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_SOURCE_WEIGHTS))
    default_source_weight: float = 10
    freshness_days: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_FRESHNESS_DAYS))
    recency_max_age_days: int = 180
    optimal_verification_count: int = 3
    tier_bands: tuple = DEFAULT_TIER_BANDS

    # Consensus
    min_verifications: int = 3
    min_confidence_for_change: float = 60
    supermajority_factor: int = 2
    min_confidence_to_retain: float = 40

    # Admin
    admin_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from environment variables, falling back to defaults."""
        defaults = cls()
        fail_mode = os.getenv("BOT_SCORING_FAIL_MODE", defaults.bot_fail_mode).strip().lower()
        if fail_mode not in ("open", "closed"):
            fail_mode = defaults.bot_fail_mode

        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            redis_url=os.getenv("REDIS_URL") or None,
            fingerprint_salt=os.getenv("FINGERPRINT_SALT", defaults.fingerprint_salt),
            trust_proxy_headers=_env_bool("TRUST_PROXY_HEADERS", defaults.trust_proxy_headers),
            bot_scoring_enabled=_env_bool("BOT_SCORING_ENABLED", defaults.bot_scoring_enabled),
            bot_scoring_secret=os.getenv("BOT_SCORING_SECRET") or None,
            bot_fail_mode=fail_mode,
            admin_secret=os.getenv("ADMIN_SECRET") or None,
        )

    def with_overrides(self, **overrides) -> "EngineConfig":
        """Copy of this config with the given fields replaced."""
        return replace(self, **overrides)

    def rate_limit_for(self, action: str) -> tuple:
        return self.rate_limits.get(action, DEFAULT_RATE_LIMITS["submit-claim"])

    def ttl_days_for(self, source: str) -> int:
        return self.source_ttl_days.get(source, self.default_ttl_days)

    def source_weight_for(self, source: Optional[str]) -> float:
        if not source:
            return self.default_source_weight
        return self.source_weights.get(source, self.default_source_weight)

    def freshness_days_for(self, specialty_class: Optional[str]) -> int:
        return self.freshness_days.get(specialty_class or "OTHER", self.freshness_days["OTHER"])


_settings: Optional[EngineConfig] = None


def get_settings() -> EngineConfig:
    """Process-wide config, built once from the environment."""
    global _settings
    if _settings is None:
        _settings = EngineConfig.from_env()
    return _settings
