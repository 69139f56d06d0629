"""Local provider: resources stored as JSON objects on disk.

Useful for rehearsing a stack without touching a cloud account and as the
backing plugin in tests. With no `path` option, objects live in memory only.

Options:
    path: JSON file holding all objects (created on first write)
"""

import json
import logging
import threading
from pathlib import Path
from typing import Optional

from errors import PermanentProviderError
from stack import ProviderSettings

logger = logging.getLogger(__name__)


class LocalProvider:
    """Provider plugin backed by a local JSON file."""

    def __init__(self, settings: ProviderSettings, token: str = ''):
        self.settings = settings
        path = settings.options.get('path')
        self.path: Optional[Path] = Path(path) if path else None
        self._lock = threading.Lock()
        self._objects: dict[str, dict] = {}
        if self.path is not None and self.path.exists():
            with open(self.path, encoding='utf-8') as f:
                self._objects = json.load(f)

    @staticmethod
    def _key(resource_type: str, name: str) -> str:
        return f'{resource_type}/{name}'

    def _outputs(self, resource_type: str, name: str, config: dict) -> dict:
        outputs = dict(config)
        outputs['name'] = name
        outputs['id'] = self._key(resource_type, name)
        outputs['self_link'] = f'local://{self.settings.name}/{resource_type}/{name}'
        return outputs

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(self._objects, f, indent=2, sort_keys=True)

    def create(self, resource_type: str, config: dict) -> dict:
        name = config.get('name')
        if not name:
            raise PermanentProviderError(f"{resource_type}: 'name' is required")
        key = self._key(resource_type, name)
        outputs = self._outputs(resource_type, name, config)
        with self._lock:
            existing = self._objects.get(key)
            if existing is not None and existing != outputs:
                raise PermanentProviderError(f"{key} already exists")
            self._objects[key] = outputs
            self._save()
        logger.debug(f"[local] created {key}")
        return dict(outputs)

    def update(self, resource_type: str, name: str, config: dict) -> dict:
        key = self._key(resource_type, name)
        outputs = self._outputs(resource_type, name, config)
        with self._lock:
            if key not in self._objects:
                raise PermanentProviderError(f"{key} not found")
            self._objects[key] = outputs
            self._save()
        logger.debug(f"[local] updated {key}")
        return dict(outputs)

    def delete(self, resource_type: str, name: str) -> None:
        key = self._key(resource_type, name)
        with self._lock:
            if self._objects.pop(key, None) is not None:
                self._save()
        logger.debug(f"[local] deleted {key}")

    def read(self, resource_type: str, name: str) -> dict:
        key = self._key(resource_type, name)
        with self._lock:
            if key not in self._objects:
                raise PermanentProviderError(f"{key} not found")
            return dict(self._objects[key])

    def ready(self, resource_type: str, name: str, outputs: dict) -> bool:
        with self._lock:
            return self._key(resource_type, name) in self._objects
