"""
NoteVault Error Types

Provides:
- A common base exception carrying an error type and structured details
- Provider, embedding and storage failures
- Input validation errors raised before any I/O

Usage:
    from core.errors import NotFoundError, EmbeddingMismatchError

    if not rows:
        raise NotFoundError("No notes match pattern", pattern=pattern)
"""

from typing import Any, Dict, Optional


# =============================================================================
# Base Exception
# =============================================================================

class VaultError(Exception):
    """Base exception for NoteVault errors."""

    error_type = 'internal_error'
    message = 'An unexpected error occurred'

    def __init__(self, message=None, **kwargs):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = kwargs

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.error_type,
            'message': self.message,
            'details': self.details
        }


# =============================================================================
# Input Errors
# =============================================================================

class InvalidInputError(VaultError):
    """Invalid input rejected before any I/O."""
    error_type = 'invalid_input'
    message = 'Invalid input'


class InvalidDirectionError(InvalidInputError):
    """Feedback direction other than 'up' or 'down'."""
    error_type = 'invalid_direction'
    message = "Direction must be 'up' or 'down'"


class NotFoundError(VaultError):
    """A requested mutation matched nothing."""
    error_type = 'not_found'
    message = 'Resource not found'


class ConfigurationError(VaultError):
    """Configuration issue."""
    error_type = 'configuration_error'
    message = 'Invalid configuration'


# =============================================================================
# Embedding Errors
# =============================================================================

class ProviderUnavailableError(VaultError):
    """Embedding backend unreachable, timed out or returned garbage."""
    error_type = 'provider_unavailable'
    message = 'Embedding provider unavailable'

    def __init__(
        self,
        message: str = None,
        provider: str = '',
        retryable: bool = True,
        original_error: Optional[Exception] = None,
        **kwargs
    ):
        super().__init__(message, provider=provider, **kwargs)
        self.provider = provider
        self.retryable = retryable
        self.original_error = original_error


class EmbeddingMismatchError(VaultError):
    """Query-time embedding triple differs from the one recorded for the vault."""
    error_type = 'embedding_mismatch'
    message = 'Embedding configuration does not match the indexed vectors'


# =============================================================================
# Storage Errors
# =============================================================================

class StoreError(VaultError):
    """Vault database could not be opened or read."""
    error_type = 'store_error'
    message = 'Vault database operation failed'


class NoUsableVaultsError(VaultError):
    """Every vault in a federated search failed."""
    error_type = 'no_usable_vaults'
    message = 'No vault produced usable results'
