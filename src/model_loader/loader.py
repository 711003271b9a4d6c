from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import structlog

from model_loader.config import LoaderConfig, parse_config
from model_loader.definition import resolve_model_id
from model_loader.discovery import DefinitionTable, discover_definitions, without_ignored
from model_loader.exceptions import ModelDefinitionError

logger = structlog.get_logger(__name__)


@dataclass(eq=False, slots=True)
class Loader:
    """
    Registry produced by a load: the ORM client plus the created model handles.

    A load runs in two passes over the instantiated definitions. Every schema is
    registered before any `initialize` hook runs, so a hook may look up any
    other model in `models` to wire relationships.
    """

    client: Any = None
    models: Dict[str, Any] = field(default_factory=dict)

    async def initialize(
        self,
        config: LoaderConfig | Mapping[str, Any] | None = None,
        client: Any = None,
        *,
        definitions: Optional[DefinitionTable] = None,
    ) -> Loader:
        """
        Discover, register and initialize all model definitions.

        `config` defaults to the `loader` section of `get_settings()`. Without a
        `client`, an OrmClient is built from `config.database`.

        Calling this again on the same Loader starts from an empty `models`
        mapping. Errors propagate unchanged; models registered before a failure
        stay in `models`.
        """
        cfg = _resolve_config(config)

        self.models = {}
        self.client = client if client is not None else _default_client(cfg)
        reset = getattr(self.client, "reset", None)
        if callable(reset):
            reset()

        await self.client.db_ready()
        if cfg.debug:
            cfg.log("DB Ready")

        ignored = set(cfg.ignore_models)
        factories = without_ignored(discover_definitions(cfg, definitions), ignored)
        instances = {key: _construct(key, factory, self, cfg.model_constructor_args) for key, factory in factories.items()}

        # Ignore entries match discovery keys and resolved ids alike.
        registered: list[tuple[str, Any]] = []
        for definition in instances.values():
            model_id = resolve_model_id(definition)
            if model_id in ignored:
                logger.debug("skipping ignored model", model_id=model_id)
                continue
            if cfg.debug:
                cfg.log(f"Creating model id: {model_id}")
            self.models[model_id] = self.client.create_model(
                model_id,
                getattr(definition, "schema", None),
                getattr(definition, "options", None),
            )
            registered.append((model_id, definition))

        for model_id, definition in registered:
            if cfg.debug:
                cfg.log(f"Initializing model id: {model_id}")
            model = self.models[model_id]
            definition.initialize(self, model, *cfg.model_initialize_args)

        if cfg.install:
            logger.info("installing model tables", models=sorted(self.models))
            self.client.install()

        logger.debug("models loaded", models=sorted(self.models))
        return self


async def initialize(
    config: LoaderConfig | Mapping[str, Any] | None = None,
    client: Any = None,
    *,
    definitions: Optional[DefinitionTable] = None,
) -> Loader:
    """Run a load on a fresh Loader and return it."""
    return await Loader().initialize(config, client, definitions=definitions)


def _resolve_config(config: LoaderConfig | Mapping[str, Any] | None) -> LoaderConfig:
    if config is None:
        from model_loader.config import get_settings

        return get_settings().loader
    return parse_config(config)


def _default_client(cfg: LoaderConfig) -> Any:
    from model_loader.orm import OrmClient

    return OrmClient.from_settings(cfg.database)


def _construct(key: str, factory: Any, loader: Loader, args: list[Any]) -> Any:
    try:
        return factory(loader, *args)
    except TypeError as e:
        raise ModelDefinitionError(
            f"Failed to construct definition '{key}' with (loader, *model_constructor_args): {e}"
        ) from e
