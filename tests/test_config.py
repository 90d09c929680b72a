import json

import config


def test_env_flag(monkeypatch):
    monkeypatch.setenv('SMKSRG_TEST_FLAG', 'Yes')
    assert config.env_flag('SMKSRG_TEST_FLAG')
    monkeypatch.setenv('SMKSRG_TEST_FLAG', '0')
    assert not config.env_flag('SMKSRG_TEST_FLAG')
    monkeypatch.delenv('SMKSRG_TEST_FLAG')
    assert not config.env_flag('SMKSRG_TEST_FLAG')


def test_env_int(monkeypatch):
    monkeypatch.setenv('SMKSRG_TEST_INT', '12')
    assert config.env_int('SMKSRG_TEST_INT') == 12
    monkeypatch.setenv('SMKSRG_TEST_INT', 'twelve')
    assert config.env_int('SMKSRG_TEST_INT') is None


def test_settings_round_trip(tmp_path, monkeypatch):
    monkeypatch.setenv('XDG_CONFIG_HOME', str(tmp_path))
    assert config.load_settings() == {}
    config.save_settings({'workers': 4})
    assert json.loads((tmp_path / 'smksrg_settings.json').read_text()) == {'workers': 4}
    assert config.load_settings() == {'workers': 4}


def test_unreadable_settings_are_ignored(tmp_path, monkeypatch):
    monkeypatch.setenv('XDG_CONFIG_HOME', str(tmp_path))
    (tmp_path / 'smksrg_settings.json').write_text('{not json')
    assert config.load_settings() == {}


def test_resolve_defaults(monkeypatch):
    monkeypatch.delenv('SMKSRG_WORKERS', raising=False)
    assert config.resolve_defaults({}) == {'workers': None, 'simplify_tolerance': 0.0}
    out = config.resolve_defaults({'workers': 'many', 'simplify_tolerance': '0.5'})
    assert out == {'workers': None, 'simplify_tolerance': 0.5}
    monkeypatch.setenv('SMKSRG_WORKERS', '6')
    assert config.resolve_defaults({'workers': 2})['workers'] == 6
