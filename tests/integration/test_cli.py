import json
import logging
import sys

import pytest
import yaml
from click.testing import CliRunner

from layerup.CLI.main import EXIT_INVALID, EXIT_NOT_READY, EXIT_OK, cli


def py(code):
    return [sys.executable, "-c", code]


READY = {'kind': 'command', 'command': py("raise SystemExit(0)")}
NEVER_READY = {'kind': 'command', 'command': py("raise SystemExit(1)")}


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    # basicConfig(force=True) inside the CLI binds to the runner's stderr
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)


def write_config(tmp_path, content):
    config_file = tmp_path / "layerup.yml"
    with open(config_file, 'w') as f:
        yaml.dump(content, f)
    return str(config_file)


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'layered service startup' in result.output


def test_cli_run_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['run', '--help'])
    assert result.exit_code == 0
    assert '--variant' in result.output
    assert '--skip-prepare' in result.output


def test_cli_run_no_file(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, ['run', str(tmp_path / 'non_existent.yml')])
    assert result.exit_code == EXIT_INVALID
    assert 'Error: Cannot read' in result.output


def test_cli_run_cycle(tmp_path):
    config = write_config(tmp_path, {'services': {
        'a': {'depends_on': ['b']},
        'b': {'depends_on': ['a']},
    }})
    result = CliRunner().invoke(cli, ['run', config])
    assert result.exit_code == EXIT_INVALID
    assert 'Circular dependency detected' in result.output


def test_cli_run_ready(tmp_path):
    config = write_config(tmp_path, {'services': {
        'db': {'readiness': READY},
        'web': {'depends_on': ['db'], 'readiness': READY},
    }})
    result = CliRunner().invoke(cli, ['run', config])
    assert result.exit_code == EXIT_OK
    assert 'All services are ready.' in result.output


def test_cli_run_not_ready(tmp_path):
    config = write_config(tmp_path, {'services': {
        'db': {'readiness': READY},
        'web': {'depends_on': ['db'], 'readiness': NEVER_READY,
                'max_wait_seconds': 0.2, 'retry_interval_seconds': 0.1},
        'worker': {'depends_on': ['web']},
    }})
    result = CliRunner().invoke(cli, ['run', config])
    assert result.exit_code == EXIT_NOT_READY
    assert 'Startup failed: web' in result.output
    assert 'not started' in result.output


def test_cli_run_json(tmp_path):
    config = write_config(tmp_path, {'services': {
        'db': {'readiness': READY},
        'web': {'depends_on': ['db'], 'readiness': NEVER_READY,
                'max_wait_seconds': 0.2, 'retry_interval_seconds': 0.1},
    }})
    result = CliRunner().invoke(cli, ['--log-level', 'CRITICAL', 'run', config, '--json'])
    assert result.exit_code == EXIT_NOT_READY

    report = json.loads(result.stdout)
    assert report['overall_ok'] is False
    assert report['services']['db']['state'] == 'ready'
    assert report['services']['web']['state'] == 'failed'
    assert report['services']['web']['attempts'] == 2
    assert report['services']['web']['error_type'] == 'ProbeTimeoutError'


def test_cli_run_variant(tmp_path):
    code = ("import os\n"
            "open('variant.txt', 'w').write(os.environ['REPO_REF'] + ' ' + os.environ['LAYERUP_VARIANT'])")
    config = write_config(tmp_path, {
        'environment': {'REPO_REF': 'main'},
        'variants': {'bsl': {'environment': {'REPO_REF': 'bsl-main'}}},
        'services': {'web': {'start': py(code)}},
    })
    result = CliRunner().invoke(cli, ['run', config, '--variant', 'bsl'])
    assert result.exit_code == EXIT_OK
    assert (tmp_path / 'variant.txt').read_text() == 'bsl-main bsl'


def test_cli_run_unknown_variant(tmp_path):
    config = write_config(tmp_path, {
        'variants': {'bsl': {}},
        'services': {'web': {}},
    })
    result = CliRunner().invoke(cli, ['run', config, '--variant', 'finsl'])
    assert result.exit_code == EXIT_INVALID
    assert "Unknown variant 'finsl'" in result.output


def test_cli_run_prepare_failure(tmp_path):
    config = write_config(tmp_path, {
        'prepare': [py("raise SystemExit(5)")],
        'services': {'db': {'start': py("open('started', 'w')")}},
    })
    result = CliRunner().invoke(cli, ['run', config])
    assert result.exit_code == EXIT_INVALID
    assert 'exit code 5' in result.output
    assert not (tmp_path / 'started').exists()

    result = CliRunner().invoke(cli, ['run', config, '--skip-prepare'])
    assert result.exit_code == EXIT_OK
    assert (tmp_path / 'started').exists()


def test_cli_run_creates_env_file(tmp_path):
    config = write_config(tmp_path, {
        'env_file': '.env',
        'environment': {'DB_NAME': 'signbank'},
        'secrets': {'SECRET_KEY': 16},
        'services': {'web': {'readiness': READY}},
    })
    result = CliRunner().invoke(cli, ['run', config])
    assert result.exit_code == EXIT_OK

    content = (tmp_path / '.env').read_text()
    assert 'DB_NAME=signbank' in content
    assert 'SECRET_KEY=' in content

    # a second run reuses the same secret
    CliRunner().invoke(cli, ['run', config])
    assert (tmp_path / '.env').read_text() == content


def test_cli_readiness_command_sees_env_file(tmp_path):
    (tmp_path / '.env').write_text("LAYERUP_TEST_DB_USER=signbank\n")
    check = py("import os, sys; sys.exit(os.environ.get('LAYERUP_TEST_DB_USER') != 'signbank')")
    config = write_config(tmp_path, {
        'env_file': '.env',
        'services': {'db': {'readiness': {'kind': 'command', 'command': check},
                            'max_wait_seconds': 0.2, 'retry_interval_seconds': 0.1}},
    })
    result = CliRunner().invoke(cli, ['run', config])
    assert result.exit_code == EXIT_OK
    assert 'All services are ready.' in result.output
