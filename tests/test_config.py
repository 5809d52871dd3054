"""Tests for configuration loading and runtime settings."""

from pathlib import Path

import pytest

from core.config import DEFAULT_CONFIG, get_settings, load_config, resolve_path


def test_defaults_without_file():
    config = load_config()
    assert config == DEFAULT_CONFIG
    assert config is not DEFAULT_CONFIG


def test_yaml_overrides_are_merged(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "filtering:\n"
        "  min_samples: 6\n"
        "models:\n"
        "  - name: paired\n"
        "    formula: '~ patient + status'\n"
        "    contrasts: {status: statusexacerbation}\n"
    )

    config = load_config(str(path))

    assert config['filtering']['min_samples'] == 6
    assert config['filtering']['min_log_cpm'] == DEFAULT_CONFIG['filtering']['min_log_cpm']
    assert [m['name'] for m in config['models']] == ['paired']
    assert len(DEFAULT_CONFIG['models']) == 5


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / 'empty.yaml'
    path.write_text('')
    assert load_config(str(path)) == DEFAULT_CONFIG


def test_non_mapping_root_rejected(tmp_path):
    path = tmp_path / 'list.yaml'
    path.write_text('- a\n- b\n')
    with pytest.raises(ValueError):
        load_config(str(path))


def test_shipped_config_matches_defaults():
    shipped = Path(__file__).resolve().parent.parent / 'configs' / 'config.yaml'
    config = load_config(str(shipped))
    assert [m['name'] for m in config['models']] == [m['name'] for m in DEFAULT_CONFIG['models']]
    assert config['de_analysis'] == DEFAULT_CONFIG['de_analysis']


def test_resolve_path(tmp_path):
    config = {'data': {'counts': 'data/counts.tsv', 'metadata': '/abs/metadata.csv'}}
    assert resolve_path(config, 'counts', tmp_path) == tmp_path / 'data' / 'counts.tsv'
    assert resolve_path(config, 'metadata', tmp_path) == Path('/abs/metadata.csv')


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv('COHORT_DE_RENDER_PLOTS', 'false')
    monkeypatch.setenv('COHORT_DE_ANNOTATION_BATCH_SIZE', '250')
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.RENDER_PLOTS is False
        assert settings.ANNOTATION_BATCH_SIZE == 250
        assert settings.LOG_LEVEL == 'INFO'
    finally:
        get_settings.cache_clear()
