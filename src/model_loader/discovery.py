"""
model_loader.discovery

Definition sources. Each source yields a mapping ``key -> factory`` where the
factory is called as ``factory(loader, *model_constructor_args)``.

Sources:
- an explicit registration table (mapping or sequence of pairs)
- a directory of Python modules, one level deep, each exposing `definition`
- installed entry points in a configurable group
"""

from __future__ import annotations

import hashlib
import re
import sys
from contextlib import contextmanager
from importlib.metadata import EntryPoint, entry_points
from importlib.util import module_from_spec, spec_from_file_location
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple, Union

import structlog

from model_loader.config import LoaderConfig
from model_loader.definition import DefinitionFactory
from model_loader.exceptions import ModelDiscoveryError

logger = structlog.get_logger(__name__)

DEFINITION_ATTRIBUTE = "definition"

_MODULE_FILE = re.compile(r"(.+)\.py")

DefinitionTable = Union[Mapping[str, DefinitionFactory], Iterable[Tuple[str, DefinitionFactory]]]


def _require_callable(key: str, factory: Any, origin: str) -> DefinitionFactory:
    if not callable(factory):
        raise ModelDiscoveryError(
            f"Definition '{key}' from {origin} is not callable (got {type(factory)!r}). "
            "It must be a class or factory taking (loader, *args)."
        )
    return factory


def definitions_from_table(table: DefinitionTable) -> Dict[str, DefinitionFactory]:
    items = table.items() if isinstance(table, Mapping) else table
    out: Dict[str, DefinitionFactory] = {}
    for key, factory in items:
        out[key] = _require_callable(key, factory, "the registration table")
    return out


# -----------------------------
# Directory scanning
# -----------------------------


@contextmanager
def _temporary_sys_path(path: Path) -> Iterator[None]:
    """
    Temporarily prepend `path` to sys.path so definition modules can import siblings.
    """
    p = str(path)
    old = list(sys.path)
    sys.path.insert(0, p)
    try:
        yield
    finally:
        sys.path[:] = old


def _module_name(directory: Path, stem: str) -> str:
    # Unique per directory so two model folders with a `user.py` never collide.
    digest = hashlib.sha1(str(directory).encode("utf-8")).hexdigest()[:12]
    return f"_model_loader_definitions_{digest}_{stem}"


def _import_file(path: Path, module_name: str) -> ModuleType:
    spec = spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ModelDiscoveryError(f"Cannot import definition module from {path}")

    module = module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        raise ModelDiscoveryError(f"Failed to import definition module '{path.name}': {e}") from e
    return module


def _definition_files(directory: Path) -> list[tuple[str, Path]]:
    try:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as e:
        raise ModelDiscoveryError(f"Failed to list models path {directory}: {e}") from e

    files: list[tuple[str, Path]] = []
    for p in entries:
        m = _MODULE_FILE.fullmatch(p.name)
        if m is None or p.name.startswith("_") or not p.is_file():
            continue
        files.append((m.group(1), p))
    return files


def discover_definitions_from_path(
    path: str | Path,
    *,
    attribute: str = DEFINITION_ATTRIBUTE,
) -> Dict[str, DefinitionFactory]:
    """
    Import every ``*.py`` file directly inside `path` and collect its `definition`.

    - Only the top level is scanned; sub-directories are ignored.
    - Matching is case-sensitive (``User.PY`` is not a module).
    - Files starting with ``_`` (``__init__.py``, private helpers) are skipped.
    - Keys are file stems; files are visited in sorted name order.
    """
    directory = Path(path).resolve()
    if not directory.is_dir():
        raise ModelDiscoveryError(f"Models path is not a directory: {directory}")

    out: Dict[str, DefinitionFactory] = {}
    with _temporary_sys_path(directory):
        for key, file in _definition_files(directory):
            module = _import_file(file, _module_name(directory, key))
            try:
                factory = getattr(module, attribute)
            except AttributeError as e:
                raise ModelDiscoveryError(
                    f"Definition module '{file.name}' has no attribute '{attribute}'"
                ) from e
            out[key] = _require_callable(key, factory, f"'{file.name}'")

    logger.debug("definitions discovered", path=str(directory), keys=list(out))
    return out


# -----------------------------
# Entry points
# -----------------------------


def discover_definition_entrypoints(group: str) -> Dict[str, EntryPoint]:
    eps = entry_points(group=group)
    return {ep.name: ep for ep in sorted(eps, key=lambda ep: ep.name)}


def discover_definitions_from_entrypoints(group: str) -> Dict[str, DefinitionFactory]:
    """
    Load definition factories registered under an entry point group.

    Each entry point must resolve to a factory (usually a Definition subclass);
    the entry point name is the key.
    """
    out: Dict[str, DefinitionFactory] = {}
    for name, ep in discover_definition_entrypoints(group).items():
        try:
            target = ep.load()
        except Exception as e:
            raise ModelDiscoveryError(f"Failed to load entry point '{name}' ({ep.value}): {e}") from e
        out[name] = _require_callable(name, target, f"entry point '{name}'")

    logger.debug("definitions discovered", group=group, keys=list(out))
    return out


# -----------------------------
# Facade
# -----------------------------


def discover_definitions(
    config: LoaderConfig,
    definitions: Optional[DefinitionTable] = None,
) -> Dict[str, DefinitionFactory]:
    """
    Resolve the definition source for a load.

    Precedence: explicit `definitions`, then `config.models_path`, then
    `config.entry_point_group`.
    """
    if definitions is not None:
        return definitions_from_table(definitions)

    if config.models_path is not None:
        if config.debug:
            config.log(f"Loading models from path: {config.models_path}")
        return discover_definitions_from_path(config.models_path)

    if config.entry_point_group is not None:
        return discover_definitions_from_entrypoints(config.entry_point_group)

    raise ModelDiscoveryError(
        "No definition source configured: pass `definitions`, or set `models_path` or `entry_point_group`."
    )


def without_ignored(
    definitions: Mapping[str, DefinitionFactory],
    ignore: Iterable[str],
) -> Dict[str, DefinitionFactory]:
    ignored = set(ignore)
    return {key: factory for key, factory in definitions.items() if key not in ignored}
