import json
import sys

sys.path.insert(0, '.')

import pytest

from config.config_loader import Config, ConfigError, resolve_env_vars
from config.profiles import (
    TraderSettings,
    find_profile,
    list_profiles,
    load_profile,
    normalize_entry_signal,
)


def write_profile(tmp_path, name='trader.yaml', **fields):
    data = {
        'exchange': 'binance',
        'market': 'usdm',
        'pair': 'BTCUSDT',
        'entry_signal': 'market',
        'max_position': 100,
        'use_testnet': True,
    }
    data.update(fields)
    path = tmp_path / name
    if path.suffix == '.json':
        path.write_text(json.dumps(data))
    else:
        path.write_text('\n'.join(f"{k}: {v}" for k, v in data.items()) + '\n')
    return path


def test_load_yaml_profile(tmp_path):
    settings = load_profile(write_profile(tmp_path, pair='ethusdt', entry_signal='2400.5'))

    assert settings.pair == 'ethusdt'
    assert settings.symbol == 'ETHUSDT'
    assert settings.market == 'usdm'
    assert settings.max_position == 100.0
    assert settings.use_testnet is True
    assert settings.entry_signal == '2400.5'
    assert settings.entry_limit_price == 2400.5
    assert not settings.is_market_entry
    assert settings.is_long is True


def test_load_json_profile(tmp_path):
    settings = load_profile(write_profile(tmp_path, 'trader.json', market='spot', direction='short'))
    assert settings.market == 'spot'
    assert settings.is_long is False


def test_shipped_profiles_are_valid():
    paths = list_profiles('config/profiles')
    assert [p.name for p in paths] == ['btcusdt_spot.yaml', 'ethusdt_usdm.yaml']
    for path in paths:
        assert isinstance(load_profile(path), TraderSettings)


@pytest.mark.parametrize("fields,message", [
    ({'exchange': 'kraken'}, 'only Binance'),
    ({'market': 'margin'}, 'invalid market type'),
    ({'max_position': 0}, 'max_position'),
    ({'max_position': 'lots'}, 'max_position'),
    ({'entry_signal': '-5'}, 'positive'),
    ({'entry_signal': 'soon'}, 'Invalid entry signal'),
])
def test_invalid_profiles_are_rejected(tmp_path, fields, message):
    with pytest.raises(ConfigError, match=message):
        load_profile(write_profile(tmp_path, **fields))


def test_missing_and_malformed_profiles(tmp_path):
    with pytest.raises(ConfigError):
        load_profile(tmp_path / 'nope.yaml')

    bad = tmp_path / 'bad.yaml'
    bad.write_text('- just\n- a list\n')
    with pytest.raises(ConfigError):
        load_profile(bad)


@pytest.mark.parametrize("raw,expected", [
    (None, 'market'),
    ('', 'market'),
    ('MARKET', 'market'),
    (' 101.5 ', '101.5'),
    (99, '99'),
])
def test_normalize_entry_signal(raw, expected):
    assert normalize_entry_signal(raw) == expected


def test_settings_overrides_return_new_objects():
    base = TraderSettings(pair='BTCUSDT', market='spot', max_position=10.0)
    limit = base.with_entry_signal('95')
    short = limit.with_direction(False)

    assert base.entry_signal == 'market'
    assert limit.entry_limit_price == 95.0
    assert short.is_long is False and limit.is_long is True
    with pytest.raises(ConfigError):
        base.with_entry_signal('0')


def test_find_profile_by_stem_or_path(tmp_path):
    path = write_profile(tmp_path, 'alpha.yaml')
    write_profile(tmp_path, 'beta.json')
    (tmp_path / 'notes.txt').write_text('ignored')

    assert [p.name for p in list_profiles(tmp_path)] == ['alpha.yaml', 'beta.json']
    assert find_profile('alpha', tmp_path) == path
    assert find_profile('beta.json', tmp_path).name == 'beta.json'
    assert find_profile(str(path), tmp_path / 'elsewhere') == path
    with pytest.raises(ConfigError):
        find_profile('gamma', tmp_path)


def test_config_expands_environment(tmp_path, monkeypatch):
    monkeypatch.setenv('TEST_SCALER_KEY', 'abc123')
    path = tmp_path / 'config.yaml'
    path.write_text(
        'exchange:\n'
        '  api_key: ${TEST_SCALER_KEY}\n'
        '  api_secret: ${TEST_SCALER_UNSET}\n'
        'websocket:\n'
        '  reconnect_backoff: [1, 2]\n'
    )
    cfg = Config(path)

    assert cfg.exchange.api_key == 'abc123'
    assert cfg['exchange']['api_secret'] == '${TEST_SCALER_UNSET}'
    assert cfg.section('websocket').get('reconnect_backoff') == [1, 2]
    assert len(cfg.section('missing')) == 0
    with pytest.raises(AttributeError):
        cfg.missing


def test_config_errors(tmp_path):
    with pytest.raises(ConfigError):
        Config(tmp_path / 'absent.yaml')

    path = tmp_path / 'list.yaml'
    path.write_text('- 1\n- 2\n')
    with pytest.raises(ConfigError):
        Config(path)


def test_resolve_env_vars_walks_nested_structures(monkeypatch):
    monkeypatch.setenv('TEST_SCALER_HOST', 'example.org')
    assert resolve_env_vars({'a': ['${TEST_SCALER_HOST}', 3], 'b': {'c': 'plain'}}) == {
        'a': ['example.org', 3],
        'b': {'c': 'plain'},
    }
