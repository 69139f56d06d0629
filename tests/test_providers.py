"""Tests for providers package (plugin registry and local provider)."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import make_stack
from config import ConfigError
from errors import PermanentProviderError
from providers import (
    HelmProvider,
    LocalProvider,
    Provider,
    RestProvider,
    build_provider,
    build_providers,
    supports_readiness,
)
from stack import ProviderSettings


def _local(path=None):
    options = {'path': str(path)} if path else {}
    return LocalProvider(ProviderSettings(name='local', kind='local', options=options))


class TestRegistry:
    """Tests for provider construction."""

    def test_build_each_kind(self):
        secrets = {'credentials': {'gcp': 'tok'}}
        rest = build_provider(ProviderSettings('gcp', 'rest', {'endpoint': 'https://x'}, 'gcp'),
                              secrets)
        helm = build_provider(ProviderSettings('helm', 'helm'), secrets)
        local = build_provider(ProviderSettings('local', 'local'), secrets)
        assert isinstance(rest, RestProvider)
        assert rest.session.headers['Authorization'] == 'Bearer tok'
        assert isinstance(helm, HelmProvider)
        assert isinstance(local, LocalProvider)

    def test_unknown_kind(self):
        with pytest.raises(ConfigError, match="unknown kind 'aws'"):
            build_provider(ProviderSettings('cloud', 'aws'), {})

    def test_missing_credentials(self):
        with pytest.raises(ConfigError, match="Credentials 'gcp' not found"):
            build_provider(ProviderSettings('gcp', 'rest', {'endpoint': 'https://x'}, 'gcp'), {})

    def test_build_providers_keyed_by_name(self):
        stack = make_stack([{'type': 'network', 'name': 'n'}])
        providers = build_providers(stack, secrets={})
        assert list(providers) == ['fake']
        assert isinstance(providers['fake'], LocalProvider)

    def test_protocol_and_readiness_capability(self):
        provider = _local()
        assert isinstance(provider, Provider)
        assert supports_readiness(provider)
        assert not supports_readiness(object())


class TestLocalProvider:
    """Tests for LocalProvider."""

    def test_create_returns_outputs(self):
        out = _local().create('network', {'name': 'net1', 'cidr': '10.0.0.0/16'})
        assert out == {
            'name': 'net1',
            'cidr': '10.0.0.0/16',
            'id': 'network/net1',
            'self_link': 'local://local/network/net1',
        }

    def test_create_requires_name(self):
        with pytest.raises(PermanentProviderError, match="'name' is required"):
            _local().create('network', {})

    def test_create_idempotent_for_same_config(self):
        provider = _local()
        first = provider.create('network', {'name': 'n'})
        assert provider.create('network', {'name': 'n'}) == first

    def test_create_conflict(self):
        provider = _local()
        provider.create('network', {'name': 'n', 'cidr': 'a'})
        with pytest.raises(PermanentProviderError, match='already exists'):
            provider.create('network', {'name': 'n', 'cidr': 'b'})

    def test_update(self):
        provider = _local()
        provider.create('network', {'name': 'n', 'cidr': 'a'})
        out = provider.update('network', 'n', {'name': 'n', 'cidr': 'b'})
        assert out['cidr'] == 'b'
        assert provider.read('network', 'n')['cidr'] == 'b'

    def test_update_missing(self):
        with pytest.raises(PermanentProviderError, match='not found'):
            _local().update('network', 'n', {})

    def test_delete_missing_is_noop(self):
        _local().delete('network', 'ghost')

    def test_read_missing(self):
        with pytest.raises(PermanentProviderError):
            _local().read('network', 'ghost')

    def test_ready(self):
        provider = _local()
        assert not provider.ready('network', 'n', {})
        provider.create('network', {'name': 'n'})
        assert provider.ready('network', 'n', {})

    def test_persists_to_file(self, tmp_path):
        path = tmp_path / 'objects.json'
        _local(path).create('network', {'name': 'n'})
        assert 'network/n' in json.loads(path.read_text())

        reopened = _local(path)
        assert reopened.read('network', 'n')['id'] == 'network/n'
        reopened.delete('network', 'n')
        assert json.loads(path.read_text()) == {}
