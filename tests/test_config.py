"""
Tests for configuration loading
"""

import pytest
import yaml

from fastsignals.config import (
    ConfigError, Settings, StopPolicy, load_settings, DEFAULT_CONFIG_PATH,
)


class TestFromDict:
    """Test overlaying YAML on defaults"""

    def test_defaults(self):
        """Test defaults fill an almost empty config"""
        settings = Settings.from_dict({'instruments': ['btcusdt']})
        assert list(settings.instruments) == ['BTCUSDT']
        assert settings.timeframes.primary == '30m'
        assert settings.capacity_for('30m') == 500
        assert settings.capacity_for('1m') == 200
        assert settings.capacity_for('4h') == 100
        assert settings.precision_for('BTCUSDT') is None

    def test_instrument_mapping(self):
        """Test instruments given as a mapping with precision"""
        settings = Settings.from_dict({'instruments': {'ETHUSDT': {'precision': 2}, 'SOLUSDT': None}})
        assert settings.precision_for('ETHUSDT') == 2
        assert settings.precision_for('SOLUSDT') is None
        assert settings.precision_for('XRPUSDT') is None

    def test_partial_section_merge(self):
        """Test a partial section keeps the other defaults"""
        settings = Settings.from_dict({'risk': {'max_daily_signals': 5}})
        assert settings.risk.max_daily_signals == 5
        assert settings.risk.min_confidence == 70.0

    def test_lists_become_tuples(self):
        """Test YAML lists become hashable tuples"""
        settings = Settings.from_dict({
            'timeframes': {'confirmation': ['1h']},
            'detectors': {'liquidity_sweep_reversal': {'distance_adjustments': [[2.0, -10.0]]}},
        })
        assert settings.timeframes.confirmation == ('1h',)
        assert settings.detectors.liquidity_sweep_reversal.distance_adjustments == ((2.0, -10.0),)
        hash(settings.timeframes)

    def test_nested_sweep_params(self):
        """Test nested sweep parameters merge"""
        settings = Settings.from_dict({'features': {'sweep': {'min_quality': 75}}})
        assert settings.features.sweep.min_quality == 75
        assert settings.features.sweep.search_bars == 10

    def test_stop_policy_overrides_merge(self):
        """Test stop policy overrides merge per family"""
        settings = Settings.from_dict({'risk': {'stops': {'breakout': {'max_stop_percent': 1.0}}}})
        assert settings.risk.stop_policy('BREAKOUT_BEARISH').max_stop_percent == 1.0
        assert settings.risk.stop_policy('LIQUIDITY_SWEEP_BULLISH').max_stop_percent == 1.8

    @pytest.mark.parametrize('signal_type,key', [
        ('LIQUIDITY_SWEEP_BEARISH', 'liquidity_sweep'),
        ('CVD_BULLISH_DIVERGENCE', 'cvd_divergence'),
        ('RSI_BEARISH_DIVERGENCE', 'divergence'),
        ('BREAKOUT_BULLISH', 'breakout'),
        ('RESISTANCE_REJECTION', 'reaction'),
        ('SOMETHING_ELSE', 'default'),
    ])
    def test_stop_policy_family(self, signal_type, key):
        """Test signal types map to stop policy families"""
        settings = Settings()
        assert settings.risk.stop_policy(signal_type) == settings.risk.stops[key]

    def test_default_policy_fallback(self):
        """Test unknown signal types use the default policy"""
        settings = Settings.from_dict({'risk': {'stops': {'default': {'max_stop_percent': 1.2}}}})
        assert settings.risk.stop_policy('SOMETHING_ELSE') == StopPolicy(max_stop_percent=1.2)


class TestValidation:
    """Test invalid configuration is rejected"""

    @pytest.mark.parametrize('raw', [
        {'instrument': ['BTCUSDT']},
        {'risk': {'max_daily_signal': 5}},
        {'features': {'sweep': {'min_qualty': 60}}},
        {'instruments': {'BTCUSDT': {'precison': 2}}},
        {'detectors': {'order': ['breakout', 'moon_detector']}},
        {'timeframes': {'fast': '1m', 'primary': '1m'}},
        {'timeframes': {'primary': '7x'}},
        {'cache': {'primary_capacity': 100, 'min_ready_bars': 200}},
        {'risk': {'min_confidence': 99}},
        {'notifier': 'telegram'},
        ['BTCUSDT'],
    ])
    def test_rejected(self, raw):
        """Test invalid configurations raise ConfigError"""
        with pytest.raises(ConfigError):
            Settings.from_dict(raw)


class TestLoadSettings:
    """Test YAML file loading"""

    def test_load(self, tmp_path):
        """Test loading a YAML file"""
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump({
            'instruments': {'BTCUSDT': {'precision': 1}},
            'fast_path': {'detectors': ['breakout']},
        }))
        settings = load_settings(path)
        assert settings.precision_for('BTCUSDT') == 1
        assert settings.fast_path.detectors == ('breakout',)

    def test_missing_file(self, tmp_path):
        """Test a missing file raises ConfigError"""
        with pytest.raises(ConfigError):
            load_settings(tmp_path / 'missing.yaml')

    def test_bad_yaml(self, tmp_path):
        """Test malformed YAML raises ConfigError"""
        path = tmp_path / 'config.yaml'
        path.write_text("instruments: [BTCUSDT\n")
        with pytest.raises(ConfigError):
            load_settings(path)

    def test_requires_instruments(self, tmp_path):
        """Test a file without instruments is rejected"""
        path = tmp_path / 'config.yaml'
        path.write_text("risk:\n  max_daily_signals: 4\n")
        with pytest.raises(ConfigError):
            load_settings(path)

    def test_shipped_config_loads(self):
        """Test the shipped config.yaml loads"""
        settings = load_settings(DEFAULT_CONFIG_PATH)
        assert 'BTCUSDT' in settings.instruments


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
