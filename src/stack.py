"""Stack loading and validation for infrastructure orchestration.

A stack declares typed, named resources, the providers that manage them,
and named outputs. Configuration values may reference the outputs of other
resources with ``${<type>.<name>.<output>}``; a reference implies that the
referencing resource is applied after the referenced one.

Example (YAML):

    schema_version: 1
    name: hub
    providers:
      gcp: {kind: rest, endpoint: https://cloud.example/v1, credentials: gcp}
    default_provider: gcp
    resources:
      - type: network
        name: net1
        configuration: {cidr: 10.0.0.0/16}
      - type: cluster
        name: c1
        configuration: {network: ${network.net1.self_link}}
        readiness: {timeout: 900}
    outputs:
      endpoint: ${cluster.c1.endpoint}
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from config import ConfigError, get_stacks_dir
from errors import UnresolvedReferenceError

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSIONS = {1}

# ${type.name.output} where output may be a dotted path into nested outputs
REFERENCE_PATTERN = re.compile(
    r'\$\{([A-Za-z][A-Za-z0-9_-]*)\.([A-Za-z0-9][A-Za-z0-9_-]*)\.([A-Za-z0-9_][A-Za-z0-9_.-]*)\}'
)

READINESS_KEYS = {'timeout', 'interval'}


@dataclass(frozen=True)
class Reference:
    """Pointer from a configuration value to another resource's output."""
    type: str
    name: str
    attribute: str

    @property
    def address(self) -> str:
        return f'{self.type}.{self.name}'

    def __str__(self) -> str:
        return f'{self.type}.{self.name}.{self.attribute}'

    def lookup(self, outputs: dict) -> Any:
        """Walk the dotted attribute path through an outputs mapping.

        Raises:
            KeyError: If any path segment is missing
        """
        value: Any = outputs
        for part in self.attribute.split('.'):
            if not isinstance(value, dict) or part not in value:
                raise KeyError(str(self))
            value = value[part]
        return value


def find_references(value: Any) -> list[Reference]:
    """Collect references in a configuration value, in order of appearance.

    Walks nested mappings and lists. Duplicates are kept once.
    """
    found: list[Reference] = []

    def _walk(v: Any) -> None:
        if isinstance(v, str):
            for m in REFERENCE_PATTERN.finditer(v):
                ref = Reference(m.group(1), m.group(2), m.group(3))
                if ref not in found:
                    found.append(ref)
        elif isinstance(v, dict):
            for item in v.values():
                _walk(item)
        elif isinstance(v, (list, tuple)):
            for item in v:
                _walk(item)

    _walk(value)
    return found


def resolve_references(
    value: Any,
    outputs_for: Callable[[str], Optional[dict]],
    source: str = '',
) -> Any:
    """Substitute references in a configuration value.

    A string that is exactly one reference is replaced by the raw output
    value (any type). References embedded in longer strings are interpolated
    as text.

    Args:
        value: Configuration value (nested mappings/lists allowed)
        outputs_for: Returns the outputs of an address, or None if unknown
        source: Address of the referencing resource (for error messages)

    Raises:
        UnresolvedReferenceError: If a referenced output is not available
    """
    def _lookup(ref: Reference) -> Any:
        outputs = outputs_for(ref.address)
        if outputs is None:
            raise UnresolvedReferenceError(source, ref.address)
        try:
            return ref.lookup(outputs)
        except KeyError:
            raise UnresolvedReferenceError(source, str(ref))

    if isinstance(value, str):
        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            return _lookup(Reference(whole.group(1), whole.group(2), whole.group(3)))
        return REFERENCE_PATTERN.sub(
            lambda m: str(_lookup(Reference(m.group(1), m.group(2), m.group(3)))),
            value,
        )
    if isinstance(value, dict):
        return {k: resolve_references(v, outputs_for, source) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, outputs_for, source) for v in value]
    return value


def _normalize_readiness(value: Any, address: str) -> Optional[dict]:
    """Normalize a readiness declaration to a dict or None."""
    if value is None or value is False:
        return None
    if value is True:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Resource '{address}': readiness must be true or a mapping")
    unknown = sorted(set(value) - READINESS_KEYS)
    if unknown:
        raise ConfigError(f"Resource '{address}': unknown readiness key(s): {', '.join(unknown)}")
    return dict(value)


@dataclass
class ResourceDecl:
    """A declared unit of desired infrastructure state.

    Attributes:
        type: Provider-defined kind (network, cluster, node-pool, helm-release...)
        name: Unique within its type
        configuration: Attribute values, possibly containing references
        provider: Name of the provider instance that manages the resource
        depends_on: Explicit ordering hints (addresses)
        readiness: Readiness wait settings ({} for defaults), None to skip
    """
    type: str
    name: str
    configuration: dict = field(default_factory=dict)
    provider: str = ''
    depends_on: list[str] = field(default_factory=list)
    readiness: Optional[dict] = None

    @property
    def address(self) -> str:
        return f'{self.type}.{self.name}'

    @property
    def references(self) -> list[Reference]:
        return find_references(self.configuration)

    @property
    def dependencies(self) -> list[str]:
        """Addresses this resource must be applied after (explicit first)."""
        deps: list[str] = []
        for address in self.depends_on + [r.address for r in self.references]:
            if address not in deps:
                deps.append(address)
        return deps

    @classmethod
    def from_dict(cls, data: dict, default_provider: str = '') -> 'ResourceDecl':
        """Create ResourceDecl from dictionary."""
        address = f"{data['type']}.{data['name']}"
        configuration = data.get('configuration') or {}
        if not isinstance(configuration, dict):
            raise ConfigError(f"Resource '{address}': configuration must be a mapping")
        depends_on = data.get('depends_on', data.get('dependsOn')) or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        return cls(
            type=str(data['type']),
            name=str(data['name']),
            configuration=configuration,
            provider=data.get('provider') or default_provider,
            depends_on=[str(d) for d in depends_on],
            readiness=_normalize_readiness(data.get('readiness'), address),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'type': self.type,
            'name': self.name,
            'provider': self.provider,
            'configuration': self.configuration,
        }
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.readiness is not None:
            d['readiness'] = self.readiness or True
        return d


@dataclass(frozen=True)
class ProviderSettings:
    """Process-wide provider configuration injected at startup.

    Attributes:
        name: Instance name referenced by resources
        kind: Plugin kind (local, rest, helm)
        options: Plugin-specific options (endpoint, kube_context...)
        credentials: Key into secrets.yaml credentials mapping
    """
    name: str
    kind: str
    options: dict = field(default_factory=dict)
    credentials: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, data: Optional[dict]) -> 'ProviderSettings':
        data = dict(data or {})
        kind = data.pop('kind', name)
        credentials = data.pop('credentials', None)
        return cls(name=name, kind=str(kind), options=data, credentials=credentials)


@dataclass
class Stack:
    """A declarative set of resources, providers and outputs.

    Attributes:
        name: Stack identifier (also names the state directory)
        resources: Declarations in file order (order breaks ties in waves)
        providers: Provider instances by name
        default_provider: Provider used by resources that do not name one
        settings: Per-stack engine overrides (see EngineConfig)
        outputs: Named values exposed after apply, may contain references
        description: Optional description
        source_path: Path the stack was loaded from (for debugging)
    """
    name: str
    resources: list[ResourceDecl]
    providers: dict[str, ProviderSettings] = field(default_factory=dict)
    default_provider: str = ''
    settings: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    description: str = ''
    source_path: Optional[Path] = None

    def get(self, address: str) -> ResourceDecl:
        """Get a declaration by address.

        Raises:
            KeyError: If address not declared
        """
        for decl in self.resources:
            if decl.address == address:
                return decl
        raise KeyError(address)

    @property
    def addresses(self) -> list[str]:
        return [r.address for r in self.resources]

    def to_dict(self) -> dict:
        """Convert stack to dictionary (for JSON serialization)."""
        result: dict[str, Any] = {
            'schema_version': 1,
            'name': self.name,
            'resources': [r.to_dict() for r in self.resources],
        }
        if self.description:
            result['description'] = self.description
        if self.providers:
            result['providers'] = {
                name: {'kind': p.kind, **p.options,
                       **({'credentials': p.credentials} if p.credentials else {})}
                for name, p in self.providers.items()
            }
        if self.default_provider:
            result['default_provider'] = self.default_provider
        if self.settings:
            result['settings'] = dict(self.settings)
        if self.outputs:
            result['outputs'] = dict(self.outputs)
        return result

    def to_json(self) -> str:
        """Serialize stack to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Stack':
        """Create Stack from dictionary.

        Args:
            data: Stack data dictionary
            source_path: Optional source path for error messages

        Returns:
            Validated Stack instance

        Raises:
            ConfigError: If the stack is invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ConfigError(
                f"Unsupported stack schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        if 'name' not in data:
            raise ConfigError("Stack missing required field: name")

        providers = {
            name: ProviderSettings.from_dict(name, pdata)
            for name, pdata in (data.get('providers') or {}).items()
        }
        default_provider = data.get('default_provider', '')
        if not default_provider and len(providers) == 1:
            default_provider = next(iter(providers))

        resources = []
        for i, res_data in enumerate(_resource_entries(data.get('resources'))):
            if 'type' not in res_data:
                raise ConfigError(f"Resource {i} ({res_data.get('name', 'unnamed')}) missing required field: type")
            if 'name' not in res_data:
                raise ConfigError(f"Resource {i} missing required field: name")
            resources.append(ResourceDecl.from_dict(res_data, default_provider))

        _validate_resources(resources, providers)

        outputs = data.get('outputs') or {}
        for ref in find_references(outputs):
            if ref.address not in {r.address for r in resources}:
                raise ConfigError(f"Output references unknown resource '{ref.address}'")

        return cls(
            name=str(data['name']),
            resources=resources,
            providers=providers,
            default_provider=default_provider,
            settings=dict(data.get('settings') or {}),
            outputs=dict(outputs),
            description=data.get('description', ''),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Stack':
        """Create Stack from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid stack JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Stack JSON must be an object")
        return cls.from_dict(data)


def _resource_entries(raw: Any) -> list[dict]:
    """Accept resources as a list of dicts or a {name: {type, ...}} mapping."""
    if raw is None:
        return []
    if isinstance(raw, dict):
        entries = []
        for name, body in raw.items():
            body = dict(body or {})
            body.setdefault('name', name)
            entries.append(body)
        return entries
    if isinstance(raw, list):
        for i, entry in enumerate(raw):
            if not isinstance(entry, dict):
                raise ConfigError(f"Resource {i} must be a mapping")
        return raw
    raise ConfigError("Stack 'resources' must be a list or mapping")


def _validate_resources(resources: list[ResourceDecl], providers: dict[str, ProviderSettings]) -> None:
    """Check address uniqueness and provider bindings.

    Reference targets and cycles are checked by the graph builder.

    Raises:
        ConfigError: If validation fails
    """
    seen: set[str] = set()
    for decl in resources:
        if decl.address in seen:
            raise ConfigError(f"Duplicate resource: '{decl.address}'")
        seen.add(decl.address)

        if not decl.provider:
            raise ConfigError(
                f"Resource '{decl.address}' has no provider and the stack has no default_provider"
            )
        if decl.provider not in providers:
            raise ConfigError(
                f"Resource '{decl.address}' uses unknown provider '{decl.provider}'. "
                f"Declared: {', '.join(sorted(providers)) or 'none'}"
            )


class StackLoader:
    """Loads stacks from the stacks directory."""

    def __init__(self, stacks_dir: Optional[Path] = None):
        self.stacks_dir = stacks_dir if stacks_dir is not None else get_stacks_dir()

    def list_stacks(self) -> list[str]:
        """List available stack names."""
        if not self.stacks_dir.exists():
            return []
        return sorted(
            f.stem for f in self.stacks_dir.glob('*.yaml')
            if f.is_file() and f.stem != 'secrets'
        )

    def load(self, name: str) -> Stack:
        """Load a stack by name.

        Raises:
            ConfigError: If stack not found or invalid
        """
        path = self.stacks_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_stacks()
            raise ConfigError(
                f"Stack '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )
        return self.load_file(path)

    def load_file(self, path: Path) -> Stack:
        """Load a stack from a YAML or JSON file.

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(f"Stack file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in stack {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Stack {path} must be a YAML object (dict)")

        logger.debug(f"Loaded stack '{data.get('name')}' from {path}")
        return Stack.from_dict(data, source_path=path)


def load_stack(
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Stack:
    """Load a stack from one of several sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path
    3. name - Named stack from the stacks directory

    Raises:
        ConfigError: If no source given, or the stack is not found or invalid
    """
    if json_str:
        return Stack.from_json(json_str)
    if file_path:
        return StackLoader(Path(file_path).parent).load_file(Path(file_path))
    if name:
        return StackLoader().load(name)
    raise ConfigError("No stack specified")
