"""Engine configuration management.

Configuration is loaded from YAML files:
- stackwright.yaml: Engine defaults (retries, backoff, readiness, parallelism)
- stacks/*.yaml: Stack definitions (see stack.py)
- stacks/secrets.yaml: Provider credentials (decrypted)

Resolution order for engine settings:
1. Built-in defaults (EngineConfig field defaults)
2. stackwright.yaml ($STACKWRIGHT_CONFIG, then repo base dir)
3. Environment overrides (STACKWRIGHT_MAX_ATTEMPTS, STACKWRIGHT_PARALLELISM)
4. Per-stack `settings:` block (applied by EngineConfig.with_overrides)
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


@dataclass(frozen=True)
class EngineConfig:
    """Settings for the execution engine.

    Immutable once loaded; per-stack overrides produce a new instance.

    Attributes:
        max_attempts: Total attempts per provider call (first try included)
        backoff_base: Initial delay in seconds between transient retries
        backoff_max: Upper bound for a single backoff delay
        readiness_timeout: Default seconds to wait for a readiness predicate
        readiness_interval: Default seconds between readiness polls
        parallelism: Maximum concurrent operations within one wave
        state_dir: Directory holding per-stack state files
    """
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    readiness_timeout: float = 600.0
    readiness_interval: float = 10.0
    parallelism: int = 4
    state_dir: Path = field(default_factory=lambda: get_base_dir() / '.states')

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            object.__setattr__(self, 'state_dir', Path(self.state_dir))
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {self.parallelism}")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ConfigError("backoff delays must not be negative")

    def with_overrides(self, overrides: Optional[dict]) -> 'EngineConfig':
        """Return a copy with known keys from overrides applied.

        Raises:
            ConfigError: If overrides contain unknown keys or mistyped values
        """
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigError(f"Unknown engine setting(s): {', '.join(unknown)}")
        for key, value in overrides.items():
            _check_type(key, value)
        return replace(self, **overrides)

    def state_file(self, stack_name: str) -> Path:
        """Path of the state file for a stack."""
        return self.state_dir / stack_name / 'state.json'


_SETTING_TYPES = {
    'max_attempts': (int,),
    'backoff_base': (int, float),
    'backoff_max': (int, float),
    'readiness_timeout': (int, float),
    'readiness_interval': (int, float),
    'parallelism': (int,),
    'state_dir': (str, Path),
}


def _check_type(key: str, value) -> None:
    """Raise ConfigError unless value suits engine setting key."""
    expected = _SETTING_TYPES[key]
    # bool is an int subclass but never a valid count or delay
    if isinstance(value, bool) or not isinstance(value, expected):
        names = ' or '.join(t.__name__ for t in expected)
        raise ConfigError(f"Engine setting '{key}' must be {names}, got {value!r}")


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def get_base_dir() -> Path:
    """Get the repository base directory."""
    return Path(__file__).parent.parent  # src/ -> repo/


def _find_config_file() -> Optional[Path]:
    """Locate stackwright.yaml.

    Resolution order:
    1. $STACKWRIGHT_CONFIG environment variable
    2. stackwright.yaml in the repo base dir
    """
    if env_path := os.environ.get('STACKWRIGHT_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"STACKWRIGHT_CONFIG={env_path} does not exist")

    local = get_base_dir() / 'stackwright.yaml'
    if local.exists():
        return local
    return None


def _env_overrides() -> dict[str, Any]:
    """Collect engine overrides from environment variables."""
    overrides: dict[str, Any] = {}
    for key, env_name in (('max_attempts', 'STACKWRIGHT_MAX_ATTEMPTS'),
                          ('parallelism', 'STACKWRIGHT_PARALLELISM')):
        value = os.environ.get(env_name)
        if value is None:
            continue
        try:
            overrides[key] = int(value)
        except ValueError:
            raise ConfigError(f"{env_name} must be an integer, got '{value}'")
    return overrides


def load_engine_config(path: Optional[Path] = None) -> EngineConfig:
    """Load engine configuration.

    Args:
        path: Optional explicit config file (skips discovery)

    Returns:
        EngineConfig with file and environment overrides applied

    Raises:
        ConfigError: If the file is invalid or contains unknown keys
    """
    if path is None:
        path = _find_config_file()

    config = EngineConfig()
    if path is not None:
        data = _parse_yaml(Path(path))
        config = config.with_overrides(data.get('engine', {}))
    return config.with_overrides(_env_overrides())


def get_stacks_dir() -> Path:
    """Discover the stacks directory.

    Resolution order:
    1. $STACKWRIGHT_STACKS environment variable
    2. stacks/ in the repo base dir
    """
    if env_path := os.environ.get('STACKWRIGHT_STACKS'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"STACKWRIGHT_STACKS={env_path} does not exist")

    local = get_base_dir() / 'stacks'
    if local.exists():
        return local

    raise ConfigError(
        "stacks directory not found. "
        "Set STACKWRIGHT_STACKS or create stacks/ in the repo."
    )


def list_stacks() -> list[str]:
    """List stack names available in the stacks directory."""
    try:
        stacks_dir = get_stacks_dir()
    except ConfigError:
        return []

    names: set[str] = set()
    for pattern in ('*.yaml', '*.yml', '*.json'):
        names.update(f.stem for f in stacks_dir.glob(pattern) if f.is_file())
    names.discard('secrets')
    return sorted(names)


def load_secrets(stacks_dir: Optional[Path] = None) -> dict:
    """Load decrypted secrets from secrets.yaml next to the stacks.

    Returns an empty dict when no secrets file exists.
    """
    if stacks_dir is None:
        try:
            stacks_dir = get_stacks_dir()
        except ConfigError:
            return {}
    secrets_file = stacks_dir / 'secrets.yaml'
    if not secrets_file.exists():
        return {}
    return _parse_yaml(secrets_file)


def resolve_credentials(key: Optional[str], secrets: dict) -> str:
    """Resolve a provider credentials key against the secrets mapping.

    Raises:
        ConfigError: If the key is set but missing from secrets
    """
    if not key:
        return ''
    credentials = secrets.get('credentials', {}) or {}
    if key not in credentials:
        raise ConfigError(
            f"Credentials '{key}' not found in secrets.yaml (credentials.{key})"
        )
    return str(credentials[key])
