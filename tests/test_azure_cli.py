"""
Tests for the az wrapper with subprocess mocked out.
"""
import subprocess
from unittest.mock import patch

import pytest

from azure_cli import AzureCli, managed_resource_group_id, mask_command
from errors import ContextError, RemoteCallError


def completed(returncode=0, stdout='', stderr=''):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def az():
    return AzureCli(quiet=True)


class TestRun:
    def test_returns_stripped_stdout(self, az):
        with patch('azure_cli.subprocess.run', return_value=completed(stdout='abc\n')) as run:
            assert az.run('account', 'show') == 'abc'
        assert run.call_args.args[0] == ['az', 'account', 'show']

    def test_non_zero_exit_raises(self, az):
        with patch('azure_cli.subprocess.run',
                   return_value=completed(returncode=3, stderr='WARNING: x\nERROR: boom\n')):
            with pytest.raises(RemoteCallError) as exc:
                az.run('group', 'create', '--name', 'rg')
        assert exc.value.returncode == 3
        assert 'ERROR: boom' in str(exc.value)

    def test_missing_executable_raises(self, az):
        with patch('azure_cli.subprocess.run', side_effect=FileNotFoundError('az')):
            with pytest.raises(RemoteCallError) as exc:
                az.run('version')
        assert exc.value.returncode == 127


class TestContext:
    def test_set_subscription_returns_canonical_id(self, az):
        with patch('azure_cli.subprocess.run', side_effect=[completed(), completed(stdout='guid-1\n')]):
            assert az.set_subscription('My Sub') == 'guid-1'

    def test_set_subscription_failure_is_context_error(self, az):
        with patch('azure_cli.subprocess.run', return_value=completed(1, stderr='ERROR: not found')):
            with pytest.raises(ContextError) as exc:
                az.set_subscription('bad')
        assert 'bad' in str(exc.value)


class TestCommands:
    def test_resource_group_exists(self, az):
        with patch('azure_cli.subprocess.run', return_value=completed(stdout='true\n')):
            assert az.resource_group_exists('rg') is True
        with patch('azure_cli.subprocess.run', return_value=completed(stdout='false\n')):
            assert az.resource_group_exists('rg') is False

    def test_accept_terms_gives_up_quietly(self, az):
        with patch('azure_cli.subprocess.run', return_value=completed(1, stderr="ERROR: 'term' is misspelled")) as run:
            result = az.accept_terms('veeam', 'offer', 'plan')
        assert run.call_count == 2
        assert not result.ok and result.advisory
        assert isinstance(result.error, RemoteCallError)

    def test_managed_app_parameters_file_is_removed(self, az):
        seen = {}

        def fake_run(cmd, **kwargs):
            path = next(a for a in cmd if a.startswith('@'))[1:]
            with open(path) as f:
                seen['content'] = f.read()
            seen['path'] = path
            return completed()

        with patch('azure_cli.subprocess.run', side_effect=fake_run):
            az.create_managed_app('rg', 'app', 'westeurope', '/subscriptions/s/resourceGroups/m',
                                  'veeam', 'offer', 'plan', '1.0', {'a': 1})

        assert seen['content'] == '{"a": 1}'
        with pytest.raises(FileNotFoundError):
            open(seen['path'])


def test_mask_command_hides_password():
    masked = mask_command(['az', 'deployment', 'adminPassword=hunter2', 'prefix=lab'])
    assert 'hunter2' not in masked
    assert 'adminPassword=****' in masked
    assert 'prefix=lab' in masked


def test_managed_resource_group_id():
    assert managed_resource_group_id('sub-1', 'mrg') == '/subscriptions/sub-1/resourceGroups/mrg'
