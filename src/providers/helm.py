"""Helm provider: manages chart releases through the helm CLI.

Resource configuration keys:
    chart: Chart reference (repo/chart, OCI URL or local path) (required)
    repo: Chart repository URL (optional, passed as --repo)
    version: Chart version (optional)
    namespace: Target namespace (default: provider option or "default")
    values: Mapping rendered to a temporary values file
    set: Mapping passed as --set key=value pairs
    wait: Pass --wait to helm (default: false)

Provider options:
    kube_context: kubectl context to target
    kubeconfig: Path to a kubeconfig file
    namespace: Default namespace
    timeout: Seconds allowed per helm invocation (default: 600)

A resolved credential is handed to helm as HELM_KUBETOKEN in its environment.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

import yaml

from common import run_command
from errors import PermanentProviderError, TransientProviderError
from stack import ProviderSettings

logger = logging.getLogger(__name__)

# Substrings of helm stderr that indicate the cluster is not reachable yet
TRANSIENT_PATTERNS = (
    'timed out',
    'timeout',
    'connection refused',
    'connection reset',
    'tls handshake',
    'i/o timeout',
    'server is currently unable',
    'etcdserver',
    'too many requests',
    'another operation (install/upgrade/rollback) is in progress',
)

# Helm's missing-release message only; kubeconfig and context errors also say "not found"
NOT_FOUND_PATTERNS = ('release: not found',)


def _is_transient(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(p in lowered for p in TRANSIENT_PATTERNS)


class HelmProvider:
    """Provider plugin for Helm releases."""

    def __init__(self, settings: ProviderSettings, token: str = ''):
        self.settings = settings
        options = settings.options
        self.kube_context: Optional[str] = options.get('kube_context')
        self.kubeconfig: Optional[str] = options.get('kubeconfig')
        self.namespace = options.get('namespace', 'default')
        self.timeout = int(options.get('timeout', 600))
        self.token = token
        # Release name -> namespace, for delete/read after create
        self._namespaces: dict[str, str] = {}

    def _cluster_args(self) -> list[str]:
        args: list[str] = []
        if self.kube_context:
            args += ['--kube-context', self.kube_context]
        if self.kubeconfig:
            args += ['--kubeconfig', self.kubeconfig]
        return args

    def _env(self) -> Optional[dict]:
        """Environment for helm; the bearer token never goes on the command line."""
        if not self.token:
            return None
        env = os.environ.copy()
        env['HELM_KUBETOKEN'] = self.token
        return env

    def _base_args(self, namespace: str) -> list[str]:
        return ['--namespace', namespace] + self._cluster_args()

    def _run(self, args: list[str]) -> str:
        """Run helm and classify failures.

        Raises:
            TransientProviderError: Cluster unreachable or busy
            PermanentProviderError: Any other failure
        """
        rc, out, err = run_command(['helm'] + args, timeout=self.timeout, env=self._env())
        if rc == 0:
            return out
        message = (err or out).strip()
        if rc == -1 or _is_transient(message):
            raise TransientProviderError(f"helm {args[0]} failed: {message}")
        raise PermanentProviderError(f"helm {args[0]} failed: {message}")

    def _namespace_for(self, name: str, config: Optional[dict] = None) -> str:
        if config and config.get('namespace'):
            return str(config['namespace'])
        if name not in self._namespaces:
            self._namespaces[name] = self._locate(name)
        return self._namespaces[name]

    def _locate(self, name: str) -> str:
        """Find the namespace of an existing release (default if absent)."""
        args = ['list', '--all-namespaces', '--filter', f'^{name}$', '--output', 'json']
        args += self._cluster_args()
        try:
            releases = json.loads(self._run(args) or '[]')
        except json.JSONDecodeError:
            releases = []
        for release in releases:
            if release.get('name') == name:
                return str(release.get('namespace', self.namespace))
        return self.namespace

    def _upgrade_install(self, resource_type: str, name: str, config: dict) -> dict:
        chart = config.get('chart')
        if not chart:
            raise PermanentProviderError(f"helm release '{name}': 'chart' is required")
        namespace = self._namespace_for(name, config)

        args = ['upgrade', '--install', name, str(chart)]
        args += self._base_args(namespace)
        args.append('--create-namespace')
        if config.get('repo'):
            args += ['--repo', str(config['repo'])]
        if config.get('version'):
            args += ['--version', str(config['version'])]
        for key, value in (config.get('set') or {}).items():
            args += ['--set', f'{key}={value}']
        if config.get('wait'):
            args += ['--wait', '--timeout', f'{self.timeout}s']

        values_path = None
        try:
            if config.get('values'):
                fd, path = tempfile.mkstemp(prefix=f'values-{name}-', suffix='.yaml')
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    yaml.safe_dump(config['values'], f, default_flow_style=False)
                values_path = Path(path)
                args += ['--values', str(values_path)]

            logger.info(f"[helm] upgrade --install {name} ({chart}) in {namespace}")
            self._run(args)
        finally:
            if values_path and values_path.exists():
                values_path.unlink()

        self._namespaces[name] = namespace
        return self.read(resource_type, name)

    def create(self, resource_type: str, config: dict) -> dict:
        return self._upgrade_install(resource_type, config['name'], config)

    def update(self, resource_type: str, name: str, config: dict) -> dict:
        return self._upgrade_install(resource_type, name, config)

    def delete(self, resource_type: str, name: str) -> None:
        namespace = self._namespace_for(name)
        try:
            self._run(['uninstall', name] + self._base_args(namespace))
        except PermanentProviderError as e:
            if any(p in str(e).lower() for p in NOT_FOUND_PATTERNS):
                logger.debug(f"[helm] release {name} already absent")
                return
            raise
        self._namespaces.pop(name, None)

    def read(self, resource_type: str, name: str) -> dict:
        namespace = self._namespace_for(name)
        out = self._run(['status', name, '--output', 'json'] + self._base_args(namespace))
        try:
            data = json.loads(out)
        except json.JSONDecodeError:
            raise PermanentProviderError(f"helm status {name}: invalid JSON output")
        info = data.get('info', {})
        chart_meta = data.get('chart', {}).get('metadata', {})
        return {
            'name': data.get('name', name),
            'namespace': data.get('namespace', namespace),
            'revision': data.get('version'),
            'status': info.get('status'),
            'chart': chart_meta.get('name'),
            'chart_version': chart_meta.get('version'),
            'app_version': chart_meta.get('appVersion'),
        }

    def ready(self, resource_type: str, name: str, outputs: dict) -> bool:
        if outputs.get('namespace'):
            self._namespaces.setdefault(name, outputs['namespace'])
        try:
            return self.read(resource_type, name).get('status') == 'deployed'
        except TransientProviderError as e:
            logger.debug(f"[helm] readiness poll for {name} failed: {e}")
            return False
