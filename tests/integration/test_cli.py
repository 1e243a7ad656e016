import json
import sys

import pytest
import yaml
from click.testing import CliRunner
from cdr.CLI.main import cli

BASE = {
    'services': {
        'web': {
            'image': 'shop/web:${TAG:-latest}',
            'ports': ['8000:8000'],
            'depends_on': {'db': {'condition': 'service_healthy'}},
        },
        'db': {
            'image': 'postgres:16',
            'healthcheck': {'test': ['CMD', 'pg_isready'], 'interval': '5s'},
        },
    }
}

OVERRIDE = {
    'services': {
        'web': {'image': 'shop/web:dev', 'ports': ['9000:9000']},
    }
}


def _write(directory, name, content):
    path = directory / name
    with open(path, 'w') as f:
        yaml.dump(content, f)
    return str(path)


@pytest.fixture
def runner():
    return CliRunner()


def test_cli_help(runner):
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'Compose descriptor resolver' in result.output
    for command in ('validate', 'plan', 'services', 'up'):
        assert command in result.output


def test_validate_ok(runner, tmp_path):
    base = _write(tmp_path, 'docker-compose.yml', BASE)
    override = _write(tmp_path, 'docker-compose.override.yml', OVERRIDE)
    result = runner.invoke(cli, ['validate', base, override])
    assert result.exit_code == 0, result.output
    assert 'OK: 2 services, startup order: db, web' in result.output


def test_validate_missing_file(runner, tmp_path):
    result = runner.invoke(cli, ['validate', str(tmp_path / 'non_existent.yml')])
    assert result.exit_code == 1
    assert 'non_existent.yml: file not found' in result.output


def test_validate_merge_conflict(runner, tmp_path):
    base = _write(tmp_path, 'base.yml', {'services': {'web': {'image': 'x', 'volumes': ['data:/data']}}})
    override = _write(tmp_path, 'override.yml', {'services': {'web': {'volumes': {'data': '/data'}}}})
    result = runner.invoke(cli, ['validate', base, override])
    assert result.exit_code == 1
    assert 'base.yml' in result.output and 'override.yml' in result.output


def test_validate_cycle(runner, tmp_path):
    path = _write(tmp_path, 'docker-compose.yml', {'services': {
        'a': {'image': 'a', 'depends_on': ['b']},
        'b': {'image': 'b', 'depends_on': ['a']},
    }})
    result = runner.invoke(cli, ['validate', path])
    assert result.exit_code == 2
    assert 'circular dependency detected: a -> b -> a' in result.output


def test_validate_missing_variable(runner, tmp_path):
    path = _write(tmp_path, 'docker-compose.yml', {'services': {'web': {'image': 'app:${TAG}'}}})
    result = runner.invoke(cli, ['--ignore-os-env', 'validate', path])
    assert result.exit_code == 1
    assert "required variable 'TAG' is not set" in result.output
    assert "service 'web'" in result.output


def test_env_files_later_wins(runner, tmp_path):
    path = _write(tmp_path, 'docker-compose.yml', {'services': {'web': {'image': 'app:${TAG}'}}})
    first = tmp_path / 'first.env'
    first.write_text('TAG=1.0\n')
    second = tmp_path / 'second.env'
    second.write_text('TAG=2.0\n')
    result = runner.invoke(cli, ['--ignore-os-env', '--env-file', str(first), '--env-file', str(second),
                                 'plan', '-o', 'json', path])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)['services']['web']['image'] == 'app:2.0'


def test_shell_variables_override_env_files(runner, tmp_path):
    path = _write(tmp_path, 'docker-compose.yml', {'services': {'web': {'image': 'app:${TAG}'}}})
    env_file = tmp_path / '.env'
    env_file.write_text('TAG=1.0\n')
    result = runner.invoke(cli, ['--env-file', str(env_file), 'plan', '-o', 'json', path],
                           env={'TAG': 'shell'})
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)['services']['web']['image'] == 'app:shell'


def test_validate_required_service(runner, tmp_path):
    path = _write(tmp_path, 'docker-compose.yml', BASE)
    result = runner.invoke(cli, ['validate', '--require-service', 'worker', path])
    assert result.exit_code == 1
    assert 'required services not defined: worker' in result.output
    assert "required service 'worker' is not defined" not in result.output


def test_plan_json(runner, tmp_path):
    base = _write(tmp_path, 'docker-compose.yml', BASE)
    override = _write(tmp_path, 'docker-compose.override.yml', OVERRIDE)
    result = runner.invoke(cli, ['plan', '--format', 'json', base, override])
    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert data['x-startup-order'] == ['db', 'web']
    assert data['services']['web']['image'] == 'shop/web:dev'
    assert data['services']['web']['ports'] == ['8000:8000', '9000:9000']


def test_plan_replace_strategy(runner, tmp_path):
    base = _write(tmp_path, 'docker-compose.yml', BASE)
    override = _write(tmp_path, 'docker-compose.override.yml', OVERRIDE)
    result = runner.invoke(cli, ['--list-strategy', 'replace', 'plan', '-o', 'yaml', base, override])
    assert result.exit_code == 0, result.output
    data = yaml.safe_load(result.stdout)
    assert data['services']['web']['ports'] == ['9000:9000']


def test_services(runner, tmp_path):
    path = _write(tmp_path, 'docker-compose.yml', BASE)
    result = runner.invoke(cli, ['services', path])
    assert result.exit_code == 0
    assert result.stdout.splitlines() == ['db', 'web']


def test_up_once(runner, tmp_path):
    sleeper = [sys.executable, '-c', 'import time; time.sleep(30)']
    path = _write(tmp_path, 'docker-compose.yml', {'services': {
        'db': {
            'image': 'postgres',
            'command': sleeper,
            'healthcheck': {'test': ['CMD', sys.executable, '-c', 'pass'], 'interval': '100ms'},
        },
        'web': {
            'image': 'web',
            'command': sleeper,
            'depends_on': {'db': {'condition': 'service_healthy'}},
        },
    }})
    result = runner.invoke(cli, ['up', '--once', '--timeout', '30', path])
    assert result.exit_code == 0, result.output
    assert 'Services ready: db, web' in result.output
    assert 'Services stopped.' in result.output
    assert (tmp_path / '.cdr' / 'logs' / 'db.log').exists()


def test_up_timeout(runner, tmp_path):
    sleeper = [sys.executable, '-c', 'import time; time.sleep(30)']
    path = _write(tmp_path, 'docker-compose.yml', {'services': {
        'db': {
            'image': 'postgres',
            'command': sleeper,
            'healthcheck': {
                'test': ['CMD', sys.executable, '-c', 'import sys; sys.exit(1)'],
                'interval': '100ms',
                'retries': 1,
            },
        },
        'web': {
            'image': 'web',
            'command': sleeper,
            'depends_on': {'db': {'condition': 'service_healthy'}},
        },
    }})
    result = runner.invoke(cli, ['up', '--once', '--timeout', '1', path])
    assert result.exit_code == 3
    assert 'did not become ready' in result.output
    assert 'web (waiting_for_deps) waiting for db' in result.output
    assert 'Services stopped.' in result.output


@pytest.mark.parametrize("option", ['--timeout=0', '--timeout=-5', '--grace=-1'])
def test_up_rejects_out_of_range_durations(runner, tmp_path, option):
    path = _write(tmp_path, 'docker-compose.yml', BASE)
    result = runner.invoke(cli, ['up', path, '--once', option])
    assert result.exit_code == 2
    assert 'Invalid value' in result.output
    assert not isinstance(result.exception, ValueError)
