"""
Configuration

Loads config.yaml, overlays it on the built-in defaults and freezes the
result into dataclasses. Settings are immutable for the process lifetime;
secrets (bot token, chat ids) are read from the environment.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, Dict, Any, Tuple

import yaml

from .models import timeframe_to_ms

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / 'config.yaml'


class ConfigError(Exception):
    """Raised for unreadable or invalid configuration."""


# ═══════════════════════════════════════════════════════════════════════════
# SECTIONS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class InstrumentConfig:
    symbol: str
    precision: Optional[int] = None   # decimal places; derived from price when unset


@dataclass(frozen=True)
class TimeframeConfig:
    fast: str = '1m'
    primary: str = '30m'
    confirmation: Tuple[str, ...] = ('1h', '4h')

    def __post_init__(self):
        for tf in self.all():
            timeframe_to_ms(tf)
        if len(set(self.all())) != len(self.all()):
            raise ConfigError(f"Timeframes must be distinct: {self.all()}")

    def feature_inputs(self) -> Tuple[str, ...]:
        """Timeframes the feature builder reads."""
        return (self.fast, self.primary) + self.confirmation[:1]

    def all(self) -> Tuple[str, ...]:
        return (self.fast, self.primary) + tuple(self.confirmation)


@dataclass(frozen=True)
class CacheConfig:
    primary_capacity: int = 500
    fast_capacity: int = 200
    confirmation_capacity: int = 100
    min_ready_bars: int = 200

    def __post_init__(self):
        if self.min_ready_bars > self.primary_capacity:
            raise ConfigError("cache.min_ready_bars cannot exceed cache.primary_capacity")


@dataclass(frozen=True)
class HistoryConfig:
    rest_url: str = 'https://fapi.binance.com'
    max_retries: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class SweepParams:
    search_bars: int = 10             # bars scanned for the sweep candle
    level_lookback: int = 50          # bars used to locate the reference level
    level_tolerance: float = 0.0015   # fraction beyond level that counts as a sweep
    reclaim_tolerance: float = 0.0005 # fraction back inside the level required on close
    hold_tolerance: float = 0.002
    min_penetration_pct: float = 0.1
    max_penetration_pct: float = 2.0
    min_wick_body_ratio: float = 1.3
    min_wick_atr: float = 0.25
    min_false_breakout_score: float = 40.0
    min_hold_rate: float = 0.4
    cluster_threshold: float = 0.3
    min_quality: float = 60.0


@dataclass(frozen=True)
class FeatureConfig:
    atr_period: int = 14
    rsi_period: int = 14
    ema_period: int = 25
    cvd_lookback: int = 100
    volume_recent_bars: int = 5
    volume_baseline_bars: int = 10
    sweep: SweepParams = field(default_factory=SweepParams)


@dataclass(frozen=True)
class LiquiditySweepConfig:
    enabled: bool = True
    min_volume_ratio: float = 1.2
    min_order_flow_score: float = 30.0
    min_sweep_quality: float = 70.0
    base_confidence: float = 65.0
    stale_atr: float = 2.5
    # (ATR distance above which, confidence adjustment), checked in order
    distance_adjustments: Tuple[Tuple[float, float], ...] = ((2.0, -12.0), (1.5, -8.0), (1.0, -4.0))
    near_distance_atr: float = 0.5
    near_distance_bonus: float = 6.0
    strong_body_ratio: float = 0.6
    min_strong_candles: int = 2
    min_directional_candles: int = 3


@dataclass(frozen=True)
class RSIDivergenceConfig:
    enabled: bool = True
    lookback_bars: int = 30
    oversold_level: float = 35.0
    overbought_level: float = 65.0
    pivot_left: int = 2
    pivot_right: int = 2
    min_pivot_gap: int = 3
    min_rsi_difference: float = 2.0
    confirm_tolerance: float = 3.0
    max_pivot_age: int = 10
    min_order_flow_score: float = 20.0
    require_volume_confirmation: bool = False
    min_volume_ratio: float = 1.2
    require_liquidity_sweep: bool = False
    base_confidence: float = 65.0


@dataclass(frozen=True)
class CVDDivergenceConfig:
    enabled: bool = True
    lookback_bars: int = 30
    extreme_percentile: float = 0.3
    pivot_left: int = 2
    pivot_right: int = 2
    min_pivot_gap: int = 3
    min_cvd_difference: float = 0.05
    max_pivot_age: int = 10
    min_order_flow_score: float = 20.0
    require_rsi_confirmation: bool = False
    base_confidence: float = 65.0


@dataclass(frozen=True)
class BreakoutConfig:
    enabled: bool = True
    volume_lookback: int = 49
    range_bars: int = 19
    min_volume_ratio: float = 2.0
    min_price_change: float = 0.005
    confidence: float = 85.0
    stop_buffer_atr: float = 0.3


@dataclass(frozen=True)
class ReactionConfig:
    enabled: bool = True
    level_bars: int = 29
    touch_threshold: float = 0.005
    min_bounce_atr: float = 0.3
    confidence: float = 80.0
    stop_buffer_atr: float = 0.5


DEFAULT_DETECTOR_ORDER = (
    'liquidity_sweep_reversal',
    'cvd_divergence',
    'rsi_divergence',
    'breakout',
    'sr_reaction',
)


@dataclass(frozen=True)
class DetectorConfig:
    order: Tuple[str, ...] = DEFAULT_DETECTOR_ORDER
    liquidity_sweep_reversal: LiquiditySweepConfig = field(default_factory=LiquiditySweepConfig)
    rsi_divergence: RSIDivergenceConfig = field(default_factory=RSIDivergenceConfig)
    cvd_divergence: CVDDivergenceConfig = field(default_factory=CVDDivergenceConfig)
    breakout: BreakoutConfig = field(default_factory=BreakoutConfig)
    sr_reaction: ReactionConfig = field(default_factory=ReactionConfig)

    def __post_init__(self):
        unknown = set(self.order) - set(DEFAULT_DETECTOR_ORDER)
        if unknown:
            raise ConfigError(f"Unknown detectors in detectors.order: {sorted(unknown)}")


@dataclass(frozen=True)
class FastPathConfig:
    enabled: bool = True
    min_interval_seconds: float = 10.0
    detectors: Tuple[str, ...] = ('liquidity_sweep_reversal', 'breakout', 'sr_reaction')


@dataclass(frozen=True)
class StopPolicy:
    atr_multiplier: float = 1.0
    max_stop_percent: float = 2.0
    buffer_atr: float = 0.2


DEFAULT_STOP_POLICIES = {
    'liquidity_sweep': StopPolicy(atr_multiplier=0.8, max_stop_percent=1.8, buffer_atr=0.2),
    'cvd_divergence': StopPolicy(atr_multiplier=1.0, max_stop_percent=2.0, buffer_atr=0.2),
    'divergence': StopPolicy(atr_multiplier=1.0, max_stop_percent=2.0, buffer_atr=0.2),
    'breakout': StopPolicy(atr_multiplier=1.5, max_stop_percent=2.0, buffer_atr=0.3),
    'reaction': StopPolicy(atr_multiplier=1.0, max_stop_percent=1.5, buffer_atr=0.5),
    'default': StopPolicy(),
}


@dataclass(frozen=True)
class RiskConfig:
    max_concurrent_positions: int = 3
    max_daily_signals: int = 12
    max_per_instrument_daily: int = 3
    alert_cooldown_seconds: float = 900.0
    signal_type_cooldown_seconds: float = 900.0
    min_confidence: float = 70.0
    base_size: float = 1.0
    max_size: float = 2.0
    position_size_percent: float = 2.0
    pause_after_loss: bool = True
    pause_duration_minutes: float = 60.0
    max_stop_loss_percent: float = 2.5
    timezone: str = 'UTC'
    stops: Dict[str, StopPolicy] = field(default_factory=lambda: dict(DEFAULT_STOP_POLICIES))

    def __post_init__(self):
        if not 0 <= self.min_confidence < 95:
            raise ConfigError("risk.min_confidence must be in [0, 95)")
        if self.max_size < self.base_size:
            raise ConfigError("risk.max_size must be >= risk.base_size")

    def stop_policy(self, signal_type: str) -> StopPolicy:
        """Select the stop policy for a signal type by family."""
        kind = signal_type.upper()
        if kind.startswith('LIQUIDITY_SWEEP'):
            key = 'liquidity_sweep'
        elif kind.startswith('CVD'):
            key = 'cvd_divergence'
        elif 'DIVERGENCE' in kind:
            key = 'divergence'
        elif kind.startswith('BREAKOUT'):
            key = 'breakout'
        elif kind in ('SUPPORT_BOUNCE', 'RESISTANCE_REJECTION'):
            key = 'reaction'
        else:
            key = 'default'
        return self.stops.get(key) or self.stops.get('default') or StopPolicy()


@dataclass(frozen=True)
class DispatchConfig:
    tp1_multiple: float = 0.5
    tp2_multiple: float = 1.1
    send_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class NotifierConfig:
    kind: str = 'telegram'           # 'telegram' or 'log'
    api_url: str = 'https://api.telegram.org'
    bot_token_env: str = 'BOT_TOKEN'
    chat_id_env: str = 'CHAT_ID'
    channel_id_env: str = 'CHANNEL_ID'
    parse_mode: str = ''             # '', 'HTML' or 'Markdown'
    timeout_seconds: float = 5.0

    @property
    def bot_token(self) -> Optional[str]:
        return os.environ.get(self.bot_token_env)

    @property
    def chat_id(self) -> Optional[str]:
        return os.environ.get(self.chat_id_env)

    @property
    def channel_id(self) -> Optional[str]:
        return os.environ.get(self.channel_id_env)


@dataclass(frozen=True)
class SignalLogConfig:
    enabled: bool = True
    path: str = 'data/signals.db'


@dataclass(frozen=True)
class FeedConfig:
    ws_url: str = 'wss://fstream.binance.com/stream'
    reconnect_delay_seconds: float = 5.0
    max_reconnect_delay_seconds: float = 60.0
    ping_interval_seconds: float = 30.0


@dataclass(frozen=True)
class PipelineConfig:
    queue_size: int = 1000
    shutdown_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class LoggingConfig:
    level: str = 'INFO'


# ═══════════════════════════════════════════════════════════════════════════
# ROOT SETTINGS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Settings:
    instruments: Dict[str, InstrumentConfig] = field(default_factory=dict)
    timeframes: TimeframeConfig = field(default_factory=TimeframeConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    detectors: DetectorConfig = field(default_factory=DetectorConfig)
    fast_path: FastPathConfig = field(default_factory=FastPathConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    signal_log: SignalLogConfig = field(default_factory=SignalLogConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def capacity_for(self, timeframe: str) -> int:
        if timeframe == self.timeframes.primary:
            return self.cache.primary_capacity
        if timeframe == self.timeframes.fast:
            return self.cache.fast_capacity
        return self.cache.confirmation_capacity

    def precision_for(self, instrument: str) -> Optional[int]:
        inst = self.instruments.get(instrument)
        return inst.precision if inst else None

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> 'Settings':
        """
        Build settings from a parsed YAML mapping.

        Missing keys keep their defaults; unknown keys are rejected so that
        typos fail loudly at startup instead of silently using defaults.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        raw = raw or {}
        if not isinstance(raw, dict):
            raise ConfigError("Top-level configuration must be a mapping")
        _check_keys(cls, raw, 'root')

        kwargs: Dict[str, Any] = {}
        if 'instruments' in raw:
            kwargs['instruments'] = _build_instruments(raw['instruments'])

        simple = {
            'timeframes': TimeframeConfig,
            'cache': CacheConfig,
            'history': HistoryConfig,
            'fast_path': FastPathConfig,
            'dispatch': DispatchConfig,
            'notifier': NotifierConfig,
            'signal_log': SignalLogConfig,
            'feed': FeedConfig,
            'pipeline': PipelineConfig,
            'logging': LoggingConfig,
        }
        for name, section_cls in simple.items():
            if name in raw:
                kwargs[name] = _build_section(section_cls, raw[name], name)

        if 'features' in raw:
            features = dict(_as_mapping(raw['features'], 'features'))
            if 'sweep' in features:
                features['sweep'] = _build_section(SweepParams, features['sweep'], 'features.sweep')
            kwargs['features'] = _build_section(FeatureConfig, features, 'features')

        if 'detectors' in raw:
            kwargs['detectors'] = _build_detectors(raw['detectors'])

        if 'risk' in raw:
            risk = dict(_as_mapping(raw['risk'], 'risk'))
            if 'stops' in risk:
                stops = dict(DEFAULT_STOP_POLICIES)
                for key, policy in _as_mapping(risk['stops'], 'risk.stops').items():
                    stops[key] = _build_section(StopPolicy, policy, f'risk.stops.{key}')
                risk['stops'] = stops
            kwargs['risk'] = _build_section(RiskConfig, risk, 'risk')

        try:
            return cls(**kwargs)
        except (TypeError, ValueError) as e:
            raise ConfigError(str(e)) from e


def _as_mapping(value: Any, name: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(value).__name__}")
    return value


def _check_keys(section_cls, raw: Dict[str, Any], name: str):
    known = {f.name for f in fields(section_cls)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"Unknown keys in '{name}': {sorted(unknown)}")


def _freeze(value: Any) -> Any:
    """YAML lists become tuples so settings stay hashable and immutable."""
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _build_section(section_cls, raw: Any, name: str):
    if isinstance(raw, section_cls):
        return raw
    raw = _as_mapping(raw, name)
    _check_keys(section_cls, raw, name)
    try:
        return section_cls(**{k: _freeze(v) for k, v in raw.items()})
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid '{name}' section: {e}") from e


def _build_instruments(raw: Any) -> Dict[str, InstrumentConfig]:
    """Accept either a list of symbols or a mapping of symbol -> options."""
    if isinstance(raw, list):
        return {str(s).upper(): InstrumentConfig(symbol=str(s).upper()) for s in raw}

    instruments = {}
    for symbol, options in _as_mapping(raw, 'instruments').items():
        options = _as_mapping(options, f'instruments.{symbol}')
        _check_keys(InstrumentConfig, options, f'instruments.{symbol}')
        symbol = str(symbol).upper()
        instruments[symbol] = InstrumentConfig(symbol=symbol, precision=options.get('precision'))
    return instruments


def _build_detectors(raw: Any) -> DetectorConfig:
    raw = dict(_as_mapping(raw, 'detectors'))
    sections = {
        'liquidity_sweep_reversal': LiquiditySweepConfig,
        'rsi_divergence': RSIDivergenceConfig,
        'cvd_divergence': CVDDivergenceConfig,
        'breakout': BreakoutConfig,
        'sr_reaction': ReactionConfig,
    }
    for name, section_cls in sections.items():
        if name in raw:
            raw[name] = _build_section(section_cls, raw[name], f'detectors.{name}')
    return _build_section(DetectorConfig, raw, 'detectors')


def load_settings(path: Optional[Path] = None) -> Settings:
    """
    Load settings from a YAML file.

    Args:
        path: Config file path (default: config.yaml at the project root)

    Returns:
        Frozen Settings instance

    Raises:
        ConfigError: If the file is missing, unparseable or invalid
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing {config_path}: {e}") from e

    settings = Settings.from_dict(raw)
    if not settings.instruments:
        raise ConfigError(f"No instruments configured in {config_path}")

    logger.info(f"Loaded configuration from {config_path} ({len(settings.instruments)} instruments)")
    return settings
