import os
import sys
from pathlib import Path

import pytest

# Modules live at the repository root
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from azure_cli import AzureCli
from errors import RemoteCallError
from lab_config import LAB_PARAMETERS, MARKETPLACE_PARAMETERS

LAB_ENV_VARS = [p.env_var for p in LAB_PARAMETERS + MARKETPLACE_PARAMETERS if p.env_var]


class FakeAzureCli(AzureCli):
    """Records az invocations instead of running them.

    `fail_on` holds argument prefixes that should fail, e.g. ('term', 'accept').
    Files passed as @path are read at call time so tests can inspect them
    after the real code has cleaned them up.
    """

    def __init__(self, fail_on=(), existing_groups=(), canonical_subscription=None):
        super().__init__(quiet=True)
        self.calls = []
        self.fail_on = [tuple(prefix) for prefix in fail_on]
        self.existing_groups = set(existing_groups)
        self.canonical_subscription = canonical_subscription
        self.selected_subscription = None
        self.param_files = {}

    def run(self, *args):
        self.calls.append(args)
        for arg in args:
            if arg.startswith('@'):
                self.param_files[arg[1:]] = Path(arg[1:]).read_text()
        for prefix in self.fail_on:
            if args[:len(prefix)] == prefix:
                raise RemoteCallError([self.executable, *args], 1, "ERROR: simulated failure")
        if args[:2] == ('account', 'set'):
            self.selected_subscription = args[3]
        if args[:2] == ('account', 'show'):
            return self.canonical_subscription or self.selected_subscription
        if args[:2] == ('group', 'exists'):
            return 'true' if args[3] in self.existing_groups else 'false'
        return ''

    def called(self, *prefix) -> list[tuple]:
        return [c for c in self.calls if c[:len(prefix)] == prefix]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Keep the developer's shell and .env out of every test."""
    for name in LAB_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fake_az():
    return FakeAzureCli()


@pytest.fixture
def lab_env():
    return {'SUBSCRIPTION_ID': 'sub-1', 'ADMIN_PASSWORD': 'p'}


@pytest.fixture
def marketplace_env():
    return {
        'VBMA_PUBLISHER': 'veeam',
        'VBMA_OFFER': 'azure_backup_free',
        'VBMA_PLAN': 'veeambackupazure_free_v6',
        'VBMA_PLAN_VERSION': '6.0.0',
        'VBMA_APP_NAME': 'vbma-app',
        'VBMA_MRG_NAME': 'vbma-mrg',
    }


@pytest.fixture
def write_json(tmp_path):
    def _write(name, text, bom=False):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        data = text.encode('utf-8')
        path.write_bytes((b'\xef\xbb\xbf' + data) if bom else data)
        return path
    return _write


@pytest.fixture
def make_az():
    return FakeAzureCli
