"""
Tests for spaudit/config.py.

Covers:
- YAML loading with ${VAR} / ${VAR:-default} substitution
- environment variable mapping and type coercion
- merge priority (CLI > file > env)
- AuditConfig construction and validation
- sample config parses back into a valid AuditConfig
"""
import argparse
import os
from unittest.mock import patch

import pytest
import yaml

from spaudit.config import (
    AuditConfig,
    args_to_config,
    generate_sample_config,
    load_config,
    load_config_file,
    load_env_config,
    merge_configs,
)


def _args(**overrides):
    defaults = {
        'config': None, 'output': None, 'log_level': None, 'tenant_id': None, 'client_id': None,
        'max_parallel': None, 'memory_limit_mb': None, 'max_retries': None, 'request_timeout': None,
        'resume': False, 'checkpoint': None, 'save_every': None, 'exclude': None,
        'include_personal': False, 'track_delta': False, 'largest_items': False, 'top_n': None,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture
def config_file(tmp_path):
    def write(content):
        path = tmp_path / 'm365-audit.yaml'
        path.write_text(content)
        os.chmod(path, 0o600)
        return str(path)
    return write


class TestLoadConfigFile:
    """Tests for YAML config loading."""

    def test_env_substitution(self, config_file):
        path = config_file(
            "m365:\n"
            "  tenant_id: ${TEST_TENANT}\n"
            "  client_id: ${TEST_CLIENT:-fallback-client}\n"
        )
        with patch.dict(os.environ, {'TEST_TENANT': 'tenant-123'}, clear=False):
            os.environ.pop('TEST_CLIENT', None)
            config = load_config_file(path)

        assert config['m365']['tenant_id'] == 'tenant-123'
        assert config['m365']['client_id'] == 'fallback-client'

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_file(str(tmp_path / 'nope.yaml'))

    def test_empty_file(self, config_file):
        assert load_config_file(config_file('')) == {}


class TestEnvConfig:
    """Tests for environment variable mapping."""

    def test_types_coerced(self):
        env = {
            'M365_AUDIT_MAX_PARALLEL': '16',
            'M365_AUDIT_MEMORY_LIMIT_MB': '512',
            'M365_AUDIT_RESUME': 'true',
            'M365_AUDIT_EXCLUSIONS': '*archive*, *test*',
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_env_config()

        assert config['audit']['max_parallel'] == 16
        assert config['audit']['memory_limit_mb'] == 512.0
        assert config['audit']['resume'] is True
        assert config['audit']['exclusions'] == ['*archive*', '*test*']

    def test_invalid_value_ignored(self):
        with patch.dict(os.environ, {'M365_AUDIT_MAX_PARALLEL': 'many'}, clear=True):
            assert load_env_config() == {}


class TestMergePriority:
    """Tests for configuration precedence."""

    def test_merge_nested(self):
        merged = merge_configs({'audit': {'max_parallel': 2, 'resume': True}},
                               {'audit': {'max_parallel': 8}})
        assert merged == {'audit': {'max_parallel': 8, 'resume': True}}

    def test_cli_over_file_over_env(self, config_file):
        path = config_file("audit:\n  max_parallel: 4\n  max_retries: 7\n")
        env = {'M365_AUDIT_MAX_PARALLEL': '2', 'M365_AUDIT_MAX_RETRIES': '3',
               'M365_AUDIT_REQUEST_TIMEOUT': '10'}

        with patch.dict(os.environ, env, clear=True):
            merged = load_config(_args(config=path, max_parallel=12))

        assert merged['audit']['max_parallel'] == 12
        assert merged['audit']['max_retries'] == 7
        assert merged['audit']['request_timeout'] == 10.0

    def test_unset_flags_do_not_override_file(self, config_file):
        path = config_file("audit:\n  resume: true\n")

        with patch.dict(os.environ, {}, clear=True):
            merged = load_config(_args(config=path))

        assert merged['audit']['resume'] is True

    def test_exclude_flag_split(self):
        config = args_to_config(_args(exclude='*a*,*b*'))
        assert config['audit']['exclusions'] == ['*a*', '*b*']


class TestAuditConfig:
    """Tests for AuditConfig."""

    def test_defaults_valid(self):
        config = AuditConfig()
        config.validate()
        assert config.max_parallel == 8
        assert config.max_retries == 5
        assert not config.resume

    def test_from_dict(self):
        config = AuditConfig.from_dict({
            'output': '/tmp/out',
            'audit': {'max_parallel': 3, 'exclusions': '*x*', 'unknown_key': 1},
        })
        assert config.output == '/tmp/out'
        assert config.max_parallel == 3
        assert config.exclusions == ['*x*']

    def test_checkpoint_path_defaults_into_output(self):
        assert AuditConfig(output='/data').resolved_checkpoint_path() == os.path.join('/data', 'checkpoint.json')
        assert AuditConfig(checkpoint_path='/x/cp.json').resolved_checkpoint_path() == '/x/cp.json'

    @pytest.mark.parametrize('field,value', [
        ('max_parallel', 0),
        ('max_retries', 0),
        ('request_timeout', 0),
        ('memory_limit_mb', -1),
        ('backoff_max', 0.5),
    ])
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValueError):
            AuditConfig(**{field: value}).validate()


class TestSampleConfig:

    def test_sample_parses_into_valid_config(self):
        with patch.dict(os.environ, {}, clear=True):
            data = yaml.safe_load(generate_sample_config())
        config = AuditConfig.from_dict(data)
        config.validate()
        assert config.max_parallel == 8
        assert config.include_personal_sites is False
