"""
Unit tests for env file handling and variant resolution.
"""
import os

import pytest

from layerup.MANAGERS.environment_manager import EnvironmentManager
from layerup.MODELS.orchestration_config import DeploymentConfig
from layerup.MODELS.service_definition import Service
from layerup.exceptions import ConfigError


def make_config(**kwargs):
    kwargs.setdefault('services', [Service(name='web')])
    return DeploymentConfig(**kwargs)


def counting_tokens():
    issued = []

    def token_factory(length):
        issued.append(length)
        return f"token{len(issued)}x{length}"

    return token_factory, issued


def test_secrets_in_memory_without_env_file(tmp_path):
    token_factory, issued = counting_tokens()
    config = make_config(environment={'APP_ENV': 'prod'}, secrets={'SECRET_KEY': 32})

    context = EnvironmentManager(str(tmp_path), token_factory).resolve(config)

    assert context.environment == {'APP_ENV': 'prod', 'SECRET_KEY': 'token1x32'}
    assert context.variant is None
    assert issued == [32]
    assert os.listdir(tmp_path) == []


def test_env_file_written_once(tmp_path):
    token_factory, issued = counting_tokens()
    manager = EnvironmentManager(str(tmp_path), token_factory)
    config = make_config(
        env_file='.env',
        environment={'DB_NAME': 'signbank'},
        secrets={'DB_PASSWORD': 16},
    )

    first = manager.resolve(config)
    env_path = tmp_path / '.env'
    assert env_path.exists()
    assert (os.stat(env_path).st_mode & 0o777) == 0o600
    assert first.environment['DB_PASSWORD'] == 'token1x16'

    # an operator edit survives, and no new secret is generated
    env_path.write_text(env_path.read_text() + "DB_NAME=edited\n")
    second = manager.resolve(config)
    assert second.environment['DB_PASSWORD'] == 'token1x16'
    assert second.environment['DB_NAME'] == 'edited'
    assert issued == [16]


def test_ensure_env_file_skips_existing(tmp_path, caplog):
    (tmp_path / '.env').write_text("KEEP=1\n")
    manager = EnvironmentManager(str(tmp_path))
    with caplog.at_level('INFO'):
        created = manager.ensure_env_file('.env', {'OTHER': '2'}, {})
    assert created is False
    assert (tmp_path / '.env').read_text() == "KEEP=1\n"
    assert "already exists" in caplog.text


def test_env_file_in_subdirectory(tmp_path):
    manager = EnvironmentManager(str(tmp_path))
    assert manager.ensure_env_file('config/deploy.env', {'A': '1'}, {}, variant='bsl')
    content = (tmp_path / 'config' / 'deploy.env').read_text()
    assert content.startswith("# Deployment environment generated by layerup\n# Variant: bsl\n")
    assert "A=1\n" in content


def test_quoting_round_trip(tmp_path):
    values = {
        'PLAIN': 'value',
        'SPACED': 'two words',
        'QUOTED': 'say "hi"',
        'HASH': 'a#b',
        'BACKSLASH': 'C:\\path',
        'EMPTY': '',
    }
    manager = EnvironmentManager(str(tmp_path))
    manager.ensure_env_file('.env', values, {})
    assert manager.load_env_file('.env') == values


class TestVariants:
    def config(self, **kwargs):
        return make_config(
            environment={'REPO_URL': 'https://example.org/global.git', 'REPO_REF': 'main'},
            variants={
                'bsl': {'description': 'British Sign Language',
                        'environment': {'REPO_URL': 'https://example.org/bsl.git'}},
                'auslan': {'environment': {'REPO_REF': 'auslan-2024', 'RELEASE': 3}},
            },
            **kwargs,
        )

    def test_variant_overrides_defaults(self, tmp_path):
        context = EnvironmentManager(str(tmp_path)).resolve(self.config(), 'bsl')
        assert context.variant == 'bsl'
        assert context.environment['REPO_URL'] == 'https://example.org/bsl.git'
        assert context.environment['REPO_REF'] == 'main'

    def test_variant_from_config(self, tmp_path):
        context = EnvironmentManager(str(tmp_path)).resolve(self.config(variant='auslan'))
        assert context.variant == 'auslan'
        assert context.environment['REPO_REF'] == 'auslan-2024'
        assert context.environment['RELEASE'] == '3'

    def test_cli_variant_wins_over_config(self, tmp_path):
        context = EnvironmentManager(str(tmp_path)).resolve(self.config(variant='auslan'), 'bsl')
        assert context.variant == 'bsl'

    def test_variant_overrides_env_file(self, tmp_path):
        (tmp_path / '.env').write_text("REPO_URL=https://example.org/fork.git\n")
        config = self.config(env_file='.env')
        assert EnvironmentManager(str(tmp_path)).resolve(config).environment['REPO_URL'] == \
            'https://example.org/fork.git'
        assert EnvironmentManager(str(tmp_path)).resolve(config, 'bsl').environment['REPO_URL'] == \
            'https://example.org/bsl.git'

    def test_unknown_variant(self, tmp_path):
        with pytest.raises(ConfigError) as exc:
            EnvironmentManager(str(tmp_path)).resolve(self.config(), 'finsl')
        assert "auslan, bsl" in str(exc.value)

    def test_unknown_variant_without_variants(self, tmp_path):
        with pytest.raises(ConfigError) as exc:
            EnvironmentManager(str(tmp_path)).resolve(make_config(), 'bsl')
        assert "none defined" in str(exc.value)


def test_env_file_is_created_private(tmp_path, monkeypatch):
    created = []
    real_open = os.open

    def recording_open(path, flags, mode=0o777, *args, **kwargs):
        created.append((flags, mode))
        return real_open(path, flags, mode, *args, **kwargs)

    monkeypatch.setattr(os, 'open', recording_open)
    monkeypatch.setattr(os, 'chmod', lambda *args, **kwargs: pytest.fail("mode set after creation"))
    EnvironmentManager(str(tmp_path)).ensure_env_file('.env', {}, {'SECRET_KEY': 8})
    monkeypatch.undo()

    assert len(created) == 1
    flags, mode = created[0]
    assert mode == 0o600
    assert flags & os.O_CREAT and flags & os.O_EXCL
    assert (os.stat(tmp_path / '.env').st_mode & 0o777) == 0o600
