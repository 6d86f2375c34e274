"""
Core Infrastructure for NoteVault

Provides:
- Error types shared by every layer
- Embedding provider abstraction
- Configuration loading
- Structured logging setup
- Search metrics
"""

from .errors import (
    VaultError,
    InvalidInputError,
    InvalidDirectionError,
    NotFoundError,
    ConfigurationError,
    ProviderUnavailableError,
    EmbeddingMismatchError,
    StoreError,
    NoUsableVaultsError,
)

__all__ = [
    'VaultError',
    'InvalidInputError',
    'InvalidDirectionError',
    'NotFoundError',
    'ConfigurationError',
    'ProviderUnavailableError',
    'EmbeddingMismatchError',
    'StoreError',
    'NoUsableVaultsError',
]
