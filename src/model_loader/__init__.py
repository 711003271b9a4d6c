"""
model_loader

Registers model definitions with an ORM client in two ordered passes:
every schema is created first, then every definition's `initialize` hook runs
so models can wire relationships to each other.

Definitions come from:
  - an explicit registration table passed to `initialize`
  - a directory of Python modules (each exposing `definition`)
  - an entry point group
"""

try:
    from ._version import version as __version__  # populated by setuptools-scm
except ModuleNotFoundError:
    __version__ = "0.0.0"

from .config import LoaderConfig, get_settings, parse_config
from .definition import Definition, resolve_model_id
from .exceptions import LoaderError, ModelDefinitionError, ModelDiscoveryError, ModelSchemaError
from .loader import Loader, initialize
from .orm import ModelHandle, ModelOptions, OrmClient, Relation

__all__ = [
    "__version__",
    # loading
    "Loader",
    "initialize",
    # config
    "LoaderConfig",
    "get_settings",
    "parse_config",
    # definitions
    "Definition",
    "resolve_model_id",
    # orm
    "ModelHandle",
    "ModelOptions",
    "OrmClient",
    "Relation",
    # errors
    "LoaderError",
    "ModelDefinitionError",
    "ModelDiscoveryError",
    "ModelSchemaError",
]
