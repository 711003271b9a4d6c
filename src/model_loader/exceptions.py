from __future__ import annotations


class LoaderError(RuntimeError):
    """Base error for everything raised by model_loader itself."""


class ModelDiscoveryError(LoaderError):
    """Raised when definition sources cannot be enumerated or imported."""


class ModelDefinitionError(LoaderError):
    """Raised when a definition cannot be constructed or has no model id."""


class ModelSchemaError(LoaderError):
    """Raised when the ORM client rejects a schema or its options."""
