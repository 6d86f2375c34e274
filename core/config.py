"""
NoteVault Configuration

Loads engine settings from a YAML file with environment overrides. The vault
database path is always an explicit value on VaultConfig and is threaded into
NoteRepository by the caller.

Usage:
    from core.config import load_config

    config = load_config(Path("~/.notevault/config.yaml").expanduser())
    repo = NoteRepository(config.db_path)
"""

import os
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / '.notevault' / 'config.yaml'

EMBEDDING_PROVIDERS = ('ollama', 'openai', 'openai-compatible', 'local', 'none')


# =============================================================================
# Config Sections
# =============================================================================

@dataclass
class EmbeddingConfig:
    """Embedding backend settings."""
    provider: str = 'ollama'
    model: str = ''
    base_url: str = ''
    api_key: str = ''
    dimensions: int = 0
    timeout: float = 2.0

    def to_provider_config(self) -> Dict[str, Any]:
        """Settings dict consumed by create_embedding_provider."""
        config = {'provider': self.provider, 'timeout': self.timeout}
        if self.model:
            config['model'] = self.model
        if self.base_url:
            config['base_url'] = self.base_url
        if self.api_key:
            config['api_key'] = self.api_key
        if self.dimensions:
            config['dimensions'] = self.dimensions
        return config


@dataclass
class SearchConfig:
    """Ranking settings."""
    profile: str = 'balanced'
    top_k: int = 10
    overfetch_factor: int = 5


@dataclass
class FederationConfig:
    """Cross-vault search settings."""
    vault_timeout: float = 5.0
    max_vaults: int = 50
    vaults: Dict[str, str] = field(default_factory=dict)


@dataclass
class VaultConfig:
    """Top-level engine configuration."""
    db_path: Path
    vault_name: str = 'default'
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    federation: FederationConfig = field(default_factory=FederationConfig)
    log_level: str = 'INFO'

    @property
    def has_embedding_provider(self) -> bool:
        return self.embedding.provider != 'none'

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['db_path'] = str(self.db_path)
        if data['embedding'].get('api_key'):
            data['embedding']['api_key'] = '***'
        return data


# =============================================================================
# Loading
# =============================================================================

def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping", section=name)
    return value


def _resolve(path, base_dir: Path) -> Path:
    path = Path(path).expanduser()
    return path if path.is_absolute() else base_dir / path


def _build(raw: Dict[str, Any], base_dir: Path) -> VaultConfig:
    db_path = raw.get('db_path')
    if not db_path:
        raise ConfigurationError("Config is missing 'db_path'")

    federation = FederationConfig(**_section(raw, 'federation'))
    if not isinstance(federation.vaults or {}, dict):
        raise ConfigurationError("federation.vaults must map vault names to database paths")
    federation.vaults = {
        name: str(_resolve(path, base_dir)) for name, path in (federation.vaults or {}).items()
    }

    return VaultConfig(
        db_path=_resolve(db_path, base_dir),
        vault_name=raw.get('vault_name', 'default'),
        embedding=EmbeddingConfig(**_section(raw, 'embedding')),
        search=SearchConfig(**_section(raw, 'search')),
        federation=federation,
        log_level=raw.get('log_level', 'INFO'),
    )


def apply_env_overrides(config: VaultConfig) -> VaultConfig:
    """Apply NOTEVAULT_* environment overrides in place."""
    if os.getenv('NOTEVAULT_DB_PATH'):
        config.db_path = Path(os.environ['NOTEVAULT_DB_PATH']).expanduser()
    if os.getenv('NOTEVAULT_EMBED_PROVIDER'):
        config.embedding.provider = os.environ['NOTEVAULT_EMBED_PROVIDER']
    if os.getenv('NOTEVAULT_EMBED_MODEL'):
        config.embedding.model = os.environ['NOTEVAULT_EMBED_MODEL']
    if os.getenv('NOTEVAULT_EMBED_BASE_URL'):
        config.embedding.base_url = os.environ['NOTEVAULT_EMBED_BASE_URL']
    if os.getenv('NOTEVAULT_PROFILE'):
        config.search.profile = os.environ['NOTEVAULT_PROFILE']
    if not config.embedding.api_key and os.getenv('OPENAI_API_KEY'):
        config.embedding.api_key = os.environ['OPENAI_API_KEY']
    return config


def validate_config(config: VaultConfig) -> List[str]:
    """
    Check a configuration for problems.

    Returns:
        List of human-readable problems (empty when valid)
    """
    from search.scoring import PROFILES

    problems = []
    if config.embedding.provider not in EMBEDDING_PROVIDERS:
        problems.append(
            f"Unknown embedding provider '{config.embedding.provider}' "
            f"(expected one of {', '.join(EMBEDDING_PROVIDERS)})"
        )
    if config.embedding.timeout <= 0:
        problems.append("embedding.timeout must be positive")
    if config.search.profile not in PROFILES:
        problems.append(f"Unknown search profile '{config.search.profile}'")
    if config.search.top_k < 1:
        problems.append("search.top_k must be at least 1")
    if config.search.overfetch_factor < 1:
        problems.append("search.overfetch_factor must be at least 1")
    if config.federation.vault_timeout <= 0:
        problems.append("federation.vault_timeout must be positive")
    if config.federation.max_vaults < 1:
        problems.append("federation.max_vaults must be at least 1")
    elif len(config.federation.vaults) > config.federation.max_vaults:
        problems.append(
            f"federation.vaults lists {len(config.federation.vaults)} vaults "
            f"(max {config.federation.max_vaults})"
        )
    return problems


def load_config(config_path: Optional[Path] = None) -> VaultConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to config YAML (uses ~/.notevault/config.yaml if None)

    Returns:
        Validated VaultConfig

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigurationError: If the config is invalid
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigurationError("Config file must contain a mapping", path=str(config_path))

    try:
        config = _build(raw.get('notevault', raw), config_path.parent)
    except TypeError as e:
        raise ConfigurationError(f"Unknown config key: {e}", path=str(config_path))

    apply_env_overrides(config)

    problems = validate_config(config)
    if problems:
        raise ConfigurationError("; ".join(problems), path=str(config_path), problems=problems)

    logger.debug(f"Loaded config from {config_path}")
    return config


_config: Optional[VaultConfig] = None


def get_config() -> VaultConfig:
    """
    Get the default configuration.

    Loads ~/.notevault/config.yaml when present, otherwise builds defaults from
    the environment (NOTEVAULT_DB_PATH or ~/.notevault/vault.db).
    """
    global _config

    if _config is None:
        if DEFAULT_CONFIG_PATH.exists():
            _config = load_config(DEFAULT_CONFIG_PATH)
        else:
            _config = apply_env_overrides(
                VaultConfig(db_path=DEFAULT_CONFIG_PATH.parent / 'vault.db')
            )
    return _config


def reset_config():
    """Drop the cached default configuration."""
    global _config
    _config = None
