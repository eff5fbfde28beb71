"""
Configuration management and loading.

Handles plan pricing, generation, retry and timeout settings.
Secrets (API keys, webhook secret) are read from the environment only.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from cinegen.core.pricing import (
    DEFAULT_PRICING_TABLE,
    PlanPricing,
    PlanTier,
    PricingTable,
    parse_plan_tier
)


@dataclass(frozen=True)
class GenerationConfig:
    """Settings for calls to the generation service."""
    cost_per_image: int = 5
    batch_size: int = 20
    portrait_concurrency: int = 3
    text_model: str = "gpt-4o-mini"
    image_model: str = "gpt-image-1"

    def __post_init__(self):
        """Validate generation values are positive."""
        if self.cost_per_image <= 0:
            raise ValueError("cost_per_image must be > 0")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if self.portrait_concurrency <= 0:
            raise ValueError("portrait_concurrency must be > 0")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy for transient generation service errors."""
    attempts: int = 5
    initial_delay: float = 3.0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")


@dataclass(frozen=True)
class TimeoutConfig:
    """Hard timeouts for one-shot reads, in seconds."""
    profile_load: float = 15.0

    def __post_init__(self):
        if self.profile_load <= 0:
            raise ValueError("profile_load must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    pricing: PricingTable = DEFAULT_PRICING_TABLE
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    currency: str = "jpy"


@dataclass(frozen=True)
class Secrets:
    """Credentials pulled from the environment."""
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]


def load_secrets() -> Secrets:
    """Read payment provider credentials from the environment."""
    return Secrets(
        stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET") or None
    )


def load_app_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate application configuration from a YAML file.

    Every section is optional and falls back to built-in defaults, but
    unknown keys are rejected so typos never silently change pricing.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return AppConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'plans', 'topup_price', 'refund', 'generation', 'retry', 'timeouts', 'currency'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    pricing = _parse_pricing(raw_config)

    generation = GenerationConfig(**_section(
        raw_config, 'generation',
        {'cost_per_image', 'batch_size', 'portrait_concurrency', 'text_model', 'image_model'}
    ))
    retry = RetryConfig(**_section(raw_config, 'retry', {'attempts', 'initial_delay'}))
    timeouts = TimeoutConfig(**_section(raw_config, 'timeouts', {'profile_load'}))

    currency = raw_config.get('currency', 'jpy')
    if not isinstance(currency, str) or not currency.strip():
        raise ValueError("'currency' must be a non-empty string")

    return AppConfig(
        pricing=pricing,
        generation=generation,
        retry=retry,
        timeouts=timeouts,
        currency=currency.lower()
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return a validated optional section as keyword arguments."""
    data = raw_config.get(name, {})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _parse_pricing(raw_config: Dict) -> PricingTable:
    """Merge configured plans over the default pricing table."""
    plans: Dict[PlanTier, PlanPricing] = dict(DEFAULT_PRICING_TABLE.plans)

    plans_data = raw_config.get('plans', {})
    if not isinstance(plans_data, dict):
        raise ValueError("'plans' must be a dictionary")

    for tier_name, plan_data in plans_data.items():
        tier = parse_plan_tier(str(tier_name))
        if not isinstance(plan_data, dict):
            raise ValueError(f"Plan '{tier_name}' must be a dictionary")
        plans[tier] = _parse_plan(plan_data, f"plans.{tier_name}", tier)

    refund_data = _section(raw_config, 'refund', {'amount_per_block', 'tokens_per_block'})
    amount_per_block = refund_data.get('amount_per_block', DEFAULT_PRICING_TABLE.refund_amount_per_block)
    tokens_per_block = refund_data.get('tokens_per_block', DEFAULT_PRICING_TABLE.refund_tokens_per_block)
    _require_positive_int(amount_per_block, "refund.amount_per_block")
    _require_positive_int(tokens_per_block, "refund.tokens_per_block")

    topup_price = raw_config.get('topup_price', DEFAULT_PRICING_TABLE.topup_price)
    _require_positive_int(topup_price, "topup_price")

    return PricingTable(
        plans=plans,
        topup_price=topup_price,
        refund_amount_per_block=amount_per_block,
        refund_tokens_per_block=tokens_per_block
    )


def _parse_plan(data: Dict, path: str, tier: PlanTier) -> PlanPricing:
    """Parse and validate one plan tier.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'ceiling', 'grant_tokens', 'price', 'topup_tokens'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for key in ('ceiling', 'grant_tokens', 'price'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
        if not isinstance(data[key], int) or isinstance(data[key], bool):
            raise ValueError(f"'{key}' in {path} must be an integer")

    topup_tokens = data.get('topup_tokens')
    if topup_tokens is not None:
        if tier == PlanTier.FREE:
            raise ValueError(f"'topup_tokens' is not allowed in {path}")
        _require_positive_int(topup_tokens, f"{path}.topup_tokens")

    return PlanPricing(
        ceiling=data['ceiling'],
        grant_tokens=data['grant_tokens'],
        price=data['price'],
        topup_tokens=topup_tokens
    )


def _require_positive_int(value: Any, path: str) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"'{path}' must be a positive integer")
