"""Tests for replica configuration module."""

import json

from replica.config import Config


def test_config_creates_default_file(tmp_path):
    """Test that config file is created with defaults if missing."""
    config_path = tmp_path / '.docsync' / 'config.json'
    config = Config(config_path)

    assert config_path.exists()

    assert config.data['server_host'] == 'localhost'
    assert config.data['server_port'] == 8000
    assert config.data['conflict_policy'] == 'server-wins'
    assert config.data['collections'] == []
    assert config.data['timeout'] == 30
    assert config.data['max_retries'] == 3


def test_config_loads_existing_file(tmp_path):
    """Test loading existing config file merges over defaults."""
    config_path = tmp_path / '.docsync' / 'config.json'
    config_path.parent.mkdir(parents=True)

    with open(config_path, 'w') as f:
        json.dump({
            'api_token': 'alice-token',
            'server_host': 'sync.example.com',
            'collections': ['notes', 'tasks'],
            'conflict_policy': 'manual',
        }, f)

    config = Config(config_path)

    assert config.get_api_token() == 'alice-token'
    assert config.get_collections() == ['notes', 'tasks']
    assert config.get_conflict_policy() == 'manual'
    assert config.get_base_url() == 'http://sync.example.com:8000'
    assert config.get_debounce_seconds() == 2.0


def test_config_save_and_get_api_token(temp_config):
    """Test saving and retrieving the API token."""
    temp_config.set_api_token('bob-token')

    assert temp_config.get_api_token() == 'bob-token'
    with open(temp_config.config_path, 'r') as f:
        assert json.load(f)['api_token'] == 'bob-token'


def test_config_handles_corrupted_file(tmp_path):
    """Test recovery from corrupted config file."""
    config_path = tmp_path / '.docsync' / 'config.json'
    config_path.parent.mkdir(parents=True)

    with open(config_path, 'w') as f:
        f.write('{ invalid json content')

    config = Config(config_path)

    assert config.data['server_host'] == 'localhost'
    assert config_path.with_suffix('.json.bak').exists()


def test_config_sync_settings(temp_config):
    """Test numeric sync settings are coerced to float."""
    assert temp_config.get_auto_sync_interval() == 60.0

    temp_config.data['auto_sync_interval'] = '0'
    temp_config.data['debounce_seconds'] = 5

    assert temp_config.get_auto_sync_interval() == 0.0
    assert temp_config.get_debounce_seconds() == 5.0


def test_config_get_retry_config(temp_config):
    """Test retry configuration retrieval."""
    temp_config.data['max_retries'] = 5

    retry_config = temp_config.get_retry_config()

    assert retry_config['max_retries'] == 5
    assert retry_config['retry_backoff_multiplier'] == 2


def test_config_directory_created_if_missing(tmp_path):
    """Test that config directory is created if it doesn't exist."""
    config_path = tmp_path / 'nested' / 'deep' / '.docsync' / 'config.json'

    Config(config_path)

    assert config_path.exists()
