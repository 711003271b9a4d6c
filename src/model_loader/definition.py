from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, ClassVar, Mapping, Optional

from model_loader.exceptions import ModelDefinitionError

if TYPE_CHECKING:
    from model_loader.loader import Loader

DefinitionFactory = Callable[..., Any]
"""Called as ``factory(loader, *model_constructor_args)``; returns a definition."""


class Definition:
    """
    Convenience base class for model definitions.

    Any object exposing ``schema``, ``options``, ``table_name`` or ``global_id``
    and ``initialize(loader, model, *args)`` is accepted by the loader; deriving
    from this class is optional.

    Example::

        class User(Definition):
            table_name = "users"
            schema = {"name": str, "email": str}

            def initialize(self, loader, model):
                model.has_many(loader.models["posts"], "posts", right_key="author_id")
    """

    table_name: ClassVar[Optional[str]] = None
    global_id: ClassVar[Optional[str]] = None
    schema: ClassVar[Mapping[str, Any]] = {}
    options: ClassVar[Optional[Mapping[str, Any]]] = None

    def __init__(self, loader: Loader, *args: Any) -> None:
        self.loader = loader
        self.args = args

    def initialize(self, loader: Loader, model: Any, *args: Any) -> None:
        return None


def resolve_model_id(definition: Any) -> str:
    """
    Model id of a definition: ``table_name`` when set, else ``global_id``.

    The camelCase spellings ``tableName``/``globalId`` are honoured as well.
    """
    for attr in ("table_name", "tableName", "global_id", "globalId"):
        value = getattr(definition, attr, None)
        if value:
            if not isinstance(value, str):
                raise ModelDefinitionError(
                    f"Definition {type(definition).__qualname__} has a non-string {attr}: {value!r}"
                )
            return value
    raise ModelDefinitionError(
        f"Definition {type(definition).__module__}.{type(definition).__qualname__} "
        "must set table_name or global_id"
    )
