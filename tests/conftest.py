"""Shared pytest fixtures for stackwright tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import EngineConfig
from errors import PermanentProviderError
from stack import Stack


class FakeProvider:
    """In-memory provider with scriptable failures.

    failures maps an address to a list of exceptions raised by successive
    create/update/delete calls for that address; once exhausted, calls succeed.
    """

    def __init__(self, failures=None, outputs=None, ready_after=None):
        self.objects = {}
        self.calls = []
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.extra_outputs = outputs or {}
        self.ready_after = ready_after or {}
        self._polls = {}
        self._lock = threading.Lock()

    def _maybe_fail(self, address):
        queue = self.failures.get(address)
        if queue:
            raise queue.pop(0)

    def _outputs(self, resource_type, name, config):
        address = f'{resource_type}.{name}'
        out = dict(config)
        out['id'] = f'{resource_type}/{name}'
        out['self_link'] = f'fake://{resource_type}/{name}'
        out.update(self.extra_outputs.get(address, {}))
        return out

    def create(self, resource_type, config):
        address = f"{resource_type}.{config['name']}"
        with self._lock:
            self.calls.append(('create', address))
        self._maybe_fail(address)
        out = self._outputs(resource_type, config['name'], config)
        with self._lock:
            self.objects[address] = out
        return out

    def update(self, resource_type, name, config):
        address = f'{resource_type}.{name}'
        with self._lock:
            self.calls.append(('update', address))
        self._maybe_fail(address)
        out = self._outputs(resource_type, name, config)
        with self._lock:
            self.objects[address] = out
        return out

    def delete(self, resource_type, name):
        address = f'{resource_type}.{name}'
        with self._lock:
            self.calls.append(('delete', address))
        self._maybe_fail(address)
        with self._lock:
            self.objects.pop(address, None)

    def read(self, resource_type, name):
        address = f'{resource_type}.{name}'
        if address not in self.objects:
            raise PermanentProviderError(f'{address} not found')
        return dict(self.objects[address])

    def ready(self, resource_type, name, outputs):
        address = f'{resource_type}.{name}'
        polls = self._polls.get(address, 0) + 1
        self._polls[address] = polls
        needed = self.ready_after.get(address, 1)
        return needed is not None and polls >= needed


def make_stack(resources, name='test', providers=None, outputs=None):
    """Build a Stack from resource dicts using a single 'fake' provider."""
    data = {
        'schema_version': 1,
        'name': name,
        'providers': providers or {'fake': {'kind': 'local'}},
        'resources': resources,
    }
    if outputs:
        data['outputs'] = outputs
    return Stack.from_dict(data)


def chain_resources():
    """network.net1 -> cluster.c1 -> pool.p1."""
    return [
        {'type': 'network', 'name': 'net1', 'configuration': {'cidr': '10.0.0.0/16'}},
        {'type': 'cluster', 'name': 'c1',
         'configuration': {'network': '${network.net1.self_link}'}},
        {'type': 'pool', 'name': 'p1',
         'configuration': {'cluster': '${cluster.c1.id}', 'size': 3}},
    ]


@pytest.fixture
def engine_config(tmp_path):
    """EngineConfig with zero backoff and a temporary state dir."""
    return EngineConfig(
        max_attempts=3,
        backoff_base=0.0,
        backoff_max=0.0,
        readiness_timeout=5.0,
        readiness_interval=0.0,
        parallelism=4,
        state_dir=tmp_path / '.states',
    )


@pytest.fixture
def fake_provider():
    """A FakeProvider with no scripted failures."""
    return FakeProvider()


@pytest.fixture
def stacks_dir(tmp_path, monkeypatch):
    """Temporary stacks directory exposed through STACKWRIGHT_STACKS."""
    path = tmp_path / 'stacks'
    path.mkdir()
    monkeypatch.setenv('STACKWRIGHT_STACKS', str(path))
    monkeypatch.delenv('STACKWRIGHT_CONFIG', raising=False)
    monkeypatch.delenv('STACKWRIGHT_MAX_ATTEMPTS', raising=False)
    monkeypatch.delenv('STACKWRIGHT_PARALLELISM', raising=False)
    return path
