"""
Configuration management and loading.

Handles engine settings read from a YAML file.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from story_context.core.history import RECENT_WINDOWS, ContextMode
from story_context.core.locales import LOCALES
from story_context.core.postprocess import (
    DEFAULT_TIME_BUDGET_MS,
    STORY_HEADER_NEWLINE,
    PostProcessor,
    SubstitutionRule,
)
from story_context.core.pricing import (
    DEFAULT_LONG_CONTEXT_THRESHOLD,
    PRICING_TABLE,
    ModelPricing,
    PricingTable,
    PricingTier,
)
from story_context.core.summary import SUMMARY_BLOCK_SIZE


@dataclass(frozen=True)
class PostProcessConfig:
    """Sandboxed post-processing rules."""
    rules: Tuple[SubstitutionRule, ...] = (STORY_HEADER_NEWLINE,)
    time_budget_ms: int = DEFAULT_TIME_BUDGET_MS

    def __post_init__(self):
        """Validate the time budget is positive."""
        if self.time_budget_ms <= 0:
            raise ValueError("time_budget_ms must be > 0")

    def build(self, language: str) -> PostProcessor:
        return PostProcessor(rules=self.rules, time_budget_ms=self.time_budget_ms, language=language)


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    model_id: str
    context_mode: ContextMode = ContextMode.SMART
    save_context_mode: ContextMode = ContextMode.FULL
    enable_cache: bool = True
    cache_ttl_seconds: int = 1800
    output_language: str = "en"
    recent_window: Dict[ContextMode, int] = field(default_factory=lambda: dict(RECENT_WINDOWS))
    summary_block_size: int = SUMMARY_BLOCK_SIZE
    postprocess: PostProcessConfig = field(default_factory=PostProcessConfig)
    pricing: PricingTable = PRICING_TABLE

    def __post_init__(self):
        """Validate numeric settings."""
        if not self.model_id or not self.model_id.strip():
            raise ValueError("model_id is required and cannot be empty")
        if self.cache_ttl_seconds <= 0:
            raise ValueError("cache_ttl_seconds must be > 0")
        if self.summary_block_size <= 0:
            raise ValueError("summary_block_size must be > 0")
        for mode, window in self.recent_window.items():
            if window <= 0:
                raise ValueError(f"recent_window.{mode.value} must be > 0")


_TOP_KEYS = {
    'model_id', 'context_mode', 'save_context_mode', 'enable_cache',
    'cache_ttl_seconds', 'output_language', 'recent_window',
    'summary_block_size', 'postprocess', 'pricing',
}


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from YAML file.

    Strict validation rejects unknown keys so a typo never silently
    falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    return parse_engine_config(raw_config)


def parse_engine_config(raw_config: Dict[str, Any]) -> EngineConfig:
    """Validate an already-loaded configuration mapping."""
    unknown_keys = set(raw_config.keys()) - _TOP_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'model_id' not in raw_config:
        raise ValueError("Missing required 'model_id'")
    model_id = raw_config['model_id']
    if not isinstance(model_id, str):
        raise ValueError("'model_id' must be a string")

    language = raw_config.get('output_language', 'en')
    if language not in LOCALES:
        raise ValueError(f"'output_language' must be one of: {sorted(LOCALES)}")

    enable_cache = raw_config.get('enable_cache', True)
    if not isinstance(enable_cache, bool):
        raise ValueError("'enable_cache' must be a boolean")

    pricing = PRICING_TABLE
    if 'pricing' in raw_config:
        pricing = PRICING_TABLE.with_overrides(_parse_pricing(raw_config['pricing']))

    return EngineConfig(
        model_id=model_id,
        context_mode=_parse_mode(raw_config.get('context_mode', 'smart'), 'context_mode'),
        save_context_mode=_parse_mode(raw_config.get('save_context_mode', 'full'), 'save_context_mode'),
        enable_cache=enable_cache,
        cache_ttl_seconds=_parse_int(raw_config.get('cache_ttl_seconds', 1800), 'cache_ttl_seconds'),
        output_language=language,
        recent_window=_parse_windows(raw_config.get('recent_window', {})),
        summary_block_size=_parse_int(raw_config.get('summary_block_size', SUMMARY_BLOCK_SIZE), 'summary_block_size'),
        postprocess=_parse_postprocess(raw_config.get('postprocess')),
        pricing=pricing,
    )


def _parse_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _parse_mode(value: Any, path: str) -> ContextMode:
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string")
    try:
        return ContextMode(value.lower())
    except ValueError:
        valid_modes = [mode.value for mode in ContextMode]
        raise ValueError(f"'{path}' must be one of: {valid_modes}")


def _parse_windows(data: Any) -> Dict[ContextMode, int]:
    if not isinstance(data, dict):
        raise ValueError("'recent_window' must be a dictionary")
    allowed_keys = {'smart', 'summarized'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown recent_window keys: {unknown_keys}")
    windows = dict(RECENT_WINDOWS)
    for key, value in data.items():
        windows[ContextMode(key)] = _parse_int(value, f"recent_window.{key}")
    return windows


def _parse_postprocess(data: Optional[Dict]) -> PostProcessConfig:
    if data is None:
        return PostProcessConfig()
    if not isinstance(data, dict):
        raise ValueError("'postprocess' must be a dictionary")
    allowed_keys = {'time_budget_ms', 'rules'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown postprocess keys: {unknown_keys}")

    rules_data = data.get('rules', [])
    if not isinstance(rules_data, list):
        raise ValueError("'postprocess.rules' must be a list")

    rules = []
    for index, rule in enumerate(rules_data):
        path = f"postprocess.rules[{index}]"
        if not isinstance(rule, dict):
            raise ValueError(f"{path} must be a dictionary")
        unknown = set(rule.keys()) - {'field', 'pattern', 'replacement', 'count'}
        if unknown:
            raise ValueError(f"Unknown keys in {path}: {unknown}")
        for required in ('field', 'pattern'):
            if required not in rule:
                raise ValueError(f"Missing required '{required}' in {path}")
        rules.append(SubstitutionRule(
            field=str(rule['field']),
            pattern=str(rule['pattern']),
            replacement=str(rule.get('replacement', '')),
            count=_parse_int(rule.get('count', 0), f"{path}.count"),
        ))

    config = PostProcessConfig(
        rules=tuple(rules),
        time_budget_ms=_parse_int(data.get('time_budget_ms', DEFAULT_TIME_BUDGET_MS), 'postprocess.time_budget_ms'),
    )
    validation = config.build('en').validate()
    if not validation.valid:
        raise ValueError(f"Invalid postprocess rules: {validation.error}")
    return config


def _parse_rate(data: Dict, key: str, path: str, required: bool = True) -> Decimal:
    if key not in data:
        if required:
            raise ValueError(f"Missing required '{key}' in {path}")
        return Decimal("0")
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{key}' in {path} must be a number")
    if rate < 0:
        raise ValueError(f"'{key}' in {path} cannot be negative")
    return rate


def _parse_tier(data: Dict, path: str, storage_default: Decimal = Decimal("0")) -> PricingTier:
    return PricingTier(
        input_rate=_parse_rate(data, 'input', path),
        output_rate=_parse_rate(data, 'output', path),
        cached_rate=_parse_rate(data, 'cached', path, required=False),
        storage_rate=_parse_rate(data, 'storage', path, required=False) if 'storage' in data else storage_default,
    )


def _parse_pricing(data: Any) -> Dict[str, ModelPricing]:
    """Parse per-model pricing overrides.

    Raises:
        ValueError: If a model entry is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")

    overrides = {}
    for model_id, model_data in data.items():
        path = f"pricing.{model_id}"
        if not isinstance(model_data, dict):
            raise ValueError(f"{path} must be a dictionary")
        unknown = set(model_data.keys()) - {'input', 'output', 'cached', 'storage', 'name', 'long_context'}
        if unknown:
            raise ValueError(f"Unknown keys in {path}: {unknown}")

        base = _parse_tier(model_data, path)
        long_context = None
        threshold = DEFAULT_LONG_CONTEXT_THRESHOLD
        if 'long_context' in model_data:
            long_data = model_data['long_context']
            long_path = f"{path}.long_context"
            if not isinstance(long_data, dict):
                raise ValueError(f"{long_path} must be a dictionary")
            unknown = set(long_data.keys()) - {'threshold', 'input', 'output', 'cached', 'storage'}
            if unknown:
                raise ValueError(f"Unknown keys in {long_path}: {unknown}")
            threshold = _parse_int(long_data.get('threshold', DEFAULT_LONG_CONTEXT_THRESHOLD), f"{long_path}.threshold")
            long_context = _parse_tier(long_data, long_path, storage_default=base.storage_rate)

        overrides[str(model_id)] = ModelPricing(
            model_id=str(model_id),
            name=str(model_data.get('name', model_id)),
            base=base,
            long_context=long_context,
            long_context_threshold=threshold,
        )
    return overrides
