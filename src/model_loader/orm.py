"""
SQLAlchemy-backed ORM client consumed by the model loader.

The loader only needs two things from a client:
- `await client.db_ready()`         -> returns once the database accepts connections
- `client.create_model(id, schema, options)` -> returns a model handle

OrmClient implements that contract on top of SQLAlchemy Core. Each model is a
`Table` in the client's `MetaData`; a `ModelHandle` wraps the table and offers
relationship helpers that definitions call from their `initialize` hook.

Model creation never touches the database. Table creation is a deliberate
action via `install()`.

Schema values may be:
- a SQLAlchemy type class or instance  (sa.String, sa.String(64), ...)
- a SQLAlchemy `Column`                 (copied; the name defaults to the key)
- a Python builtin type                 (str, int, float, bool, bytes, dict, list, datetime, date)
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Mapping, Optional, Self

import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import Column, ForeignKeyConstraint, MetaData, Table
from sqlalchemy.engine import Connection
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.types import TypeEngine

from model_loader.config import DatabaseSettings
from model_loader.database import DbHandle, engine_from_settings, normalize_db_handle
from model_loader.exceptions import ModelSchemaError


_PYTHON_TYPES: Dict[type, type[TypeEngine]] = {
    str: sa.String,
    int: sa.Integer,
    float: sa.Float,
    bool: sa.Boolean,
    bytes: sa.LargeBinary,
    dict: sa.JSON,
    list: sa.JSON,
    datetime: sa.DateTime,
    date: sa.Date,
}

RelationKind = Literal["has_one", "has_many", "belongs_to", "has_and_belongs_to_many"]


class ModelOptions(BaseModel):
    """Options accepted by `OrmClient.create_model`. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    pk: str = Field("id", description="Primary key column; added as a UUID string column if not in the schema.")
    enforce_missing: bool = Field(False, description="Declare every column NOT NULL.")
    db_schema: Optional[str] = Field(None, alias="schema", description="Database schema for the table.")


def _new_id() -> str:
    return str(uuid.uuid4())


def _column_type(model_id: str, name: str, spec: Any) -> TypeEngine | type[TypeEngine]:
    if isinstance(spec, TypeEngine):
        return spec
    if isinstance(spec, type):
        if issubclass(spec, TypeEngine):
            return spec
        if spec in _PYTHON_TYPES:
            return _PYTHON_TYPES[spec]
    raise ModelSchemaError(
        f"Unsupported type for '{model_id}.{name}': {spec!r}. "
        f"Use a SQLAlchemy type, a Column, or one of {sorted(t.__name__ for t in _PYTHON_TYPES)}."
    )


def _build_columns(model_id: str, schema: Mapping[str, Any], opts: ModelOptions) -> List[Column]:
    columns: List[Column] = []
    for name, spec in schema.items():
        if not isinstance(name, str) or not name:
            raise ModelSchemaError(f"Column names of '{model_id}' must be non-empty strings, got {name!r}")

        if isinstance(spec, Column):
            col = spec._copy()
            if col.name is None:
                col.name = col.key = name
        else:
            is_pk = name == opts.pk
            col = Column(
                name,
                _column_type(model_id, name, spec),
                primary_key=is_pk,
                nullable=not (is_pk or opts.enforce_missing),
            )
        columns.append(col)

    if opts.pk not in {c.name for c in columns}:
        columns.insert(0, Column(opts.pk, sa.String(36), primary_key=True, default=_new_id))
    return columns


@dataclass(frozen=True, slots=True)
class Relation:
    """A relationship declared on a model handle."""

    kind: RelationKind
    field: str
    target: "ModelHandle"
    left_key: str
    right_key: str
    through: Optional[Table] = None


@dataclass(eq=False, slots=True)
class ModelHandle:
    """
    A created model: its table plus the relationships declared on it.

    Keys follow the usual convention: `left_key` is a column of this model,
    `right_key` a column of the target model.
    """

    name: str
    table: Table
    client: "OrmClient"
    relations: Dict[str, Relation] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"ModelHandle(name={self.name!r}, columns={list(self.table.c.keys())})"

    # -----------------------------
    # Relationships
    # -----------------------------

    def has_one(self, other: ModelHandle, field: str, left_key: str = "id", right_key: str | None = None) -> Relation:
        right_key = right_key or f"{self.name}_id"
        _foreign_key(other.table, right_key, self.table, left_key)
        return self._add(Relation("has_one", field, other, left_key, right_key))

    def has_many(self, other: ModelHandle, field: str, left_key: str = "id", right_key: str | None = None) -> Relation:
        right_key = right_key or f"{self.name}_id"
        _foreign_key(other.table, right_key, self.table, left_key)
        return self._add(Relation("has_many", field, other, left_key, right_key))

    def belongs_to(self, other: ModelHandle, field: str, left_key: str | None = None, right_key: str = "id") -> Relation:
        left_key = left_key or f"{other.name}_id"
        _foreign_key(self.table, left_key, other.table, right_key)
        return self._add(Relation("belongs_to", field, other, left_key, right_key))

    def has_and_belongs_to_many(
        self,
        other: ModelHandle,
        field: str,
        left_key: str = "id",
        right_key: str = "id",
    ) -> Relation:
        through = self.client._join_table(self, left_key, other, right_key)
        return self._add(Relation("has_and_belongs_to_many", field, other, left_key, right_key, through))

    def get_relation(self, field: str) -> Relation:
        try:
            return self.relations[field]
        except KeyError as e:
            raise KeyError(f"Model '{self.name}' has no relation '{field}'. Known: {sorted(self.relations)}") from e

    def _add(self, relation: Relation) -> Relation:
        self.relations[relation.field] = relation
        return relation

    # -----------------------------
    # Statements
    # -----------------------------

    def select(self) -> sa.Select:
        return sa.select(self.table)

    def insert(self) -> sa.Insert:
        return sa.insert(self.table)


def _require_column(table: Table, name: str) -> Column:
    if name not in table.c:
        raise ModelSchemaError(
            f"Table '{table.fullname}' has no column '{name}'. Columns: {list(table.c.keys())}"
        )
    return table.c[name]


def _foreign_key(child: Table, child_col: str, parent: Table, parent_col: str) -> None:
    local = _require_column(child, child_col)
    target = _require_column(parent, parent_col)
    # Both sides of a relationship may declare the same key.
    for fk in local.foreign_keys:
        if fk.column is target:
            return
    child.append_constraint(ForeignKeyConstraint([child_col], [target]))


class OrmClient:
    """
    Model factory over a SQLAlchemy engine/connection.

    `schema` is the default database schema for created tables; per-model
    options may override it.
    """

    def __init__(self, db: DbHandle, *, metadata: Optional[MetaData] = None, schema: Optional[str] = None) -> None:
        self.db = db
        self.metadata = metadata if metadata is not None else MetaData()
        self.schema = schema
        self._tables: set[str] = set()

    @classmethod
    def from_settings(cls, s: DatabaseSettings) -> Self:
        return cls(engine_from_settings(s), schema=s.default_schema)

    async def db_ready(self) -> None:
        conn_or_engine = normalize_db_handle(self.db)
        if isinstance(conn_or_engine, Connection):
            # Connections are bound to the thread that opened them.
            _ping(conn_or_engine)
            return
        await asyncio.to_thread(_ping, conn_or_engine)

    def create_model(
        self,
        model_id: str,
        schema: Mapping[str, Any],
        options: Mapping[str, Any] | ModelOptions | None = None,
    ) -> ModelHandle:
        if not isinstance(model_id, str) or not model_id:
            raise ModelSchemaError(f"Model id must be a non-empty string, got {model_id!r}")
        if not isinstance(schema, Mapping):
            raise ModelSchemaError(f"Schema of '{model_id}' must be a mapping, got {type(schema)!r}")

        opts = self._parse_options(model_id, options)
        columns = _build_columns(model_id, schema, opts)
        table = self._replace_table(model_id, columns, opts.db_schema or self.schema)
        return ModelHandle(name=model_id, table=table, client=self)

    def reset(self) -> None:
        """
        Drop every table this client created from `metadata`.

        Tables added to a shared `MetaData` by other code are left alone.
        Nothing is dropped from the database.
        """
        for key in self._tables:
            table = self.metadata.tables.get(key)
            if table is not None:
                self.metadata.remove(table)
        self._tables.clear()

    def install(self) -> None:
        """Create missing tables for every registered model (checkfirst=True)."""
        conn_or_engine = normalize_db_handle(self.db)
        try:
            self.metadata.create_all(conn_or_engine, checkfirst=True)
        except SQLAlchemyError as e:
            raise ModelSchemaError(f"Failed to create tables from model metadata: {e}") from e

    def missing_tables(self) -> List[str]:
        """Registered tables that do not exist in the database yet."""
        insp = sa.inspect(normalize_db_handle(self.db))
        return [
            t.name
            for t in self.metadata.sorted_tables
            if not insp.has_table(t.name, schema=t.schema)
        ]

    # -----------------------------
    # Internals
    # -----------------------------

    @staticmethod
    def _parse_options(model_id: str, options: Mapping[str, Any] | ModelOptions | None) -> ModelOptions:
        if options is None:
            return ModelOptions()
        if isinstance(options, ModelOptions):
            return options
        try:
            return ModelOptions.model_validate(dict(options))
        except (TypeError, ValueError, ValidationError) as e:
            raise ModelSchemaError(f"Invalid options for model '{model_id}': {e}") from e

    def _replace_table(self, name: str, columns: List[Column], schema: Optional[str]) -> Table:
        key = f"{schema}.{name}" if schema else name
        existing = self.metadata.tables.get(key)
        if existing is not None:
            self.metadata.remove(existing)
        try:
            table = Table(name, self.metadata, *columns, schema=schema)
        except ArgumentError as e:
            raise ModelSchemaError(f"Invalid schema for model '{name}': {e}") from e
        self._tables.add(table.key)
        return table

    def _join_table(self, left: ModelHandle, left_key: str, right: ModelHandle, right_key: str) -> Table:
        left_col = _require_column(left.table, left_key)
        right_col = _require_column(right.table, right_key)

        left_name = f"{left.name}_{left_key}"
        right_name = f"{right.name}_{right_key}"
        if right_name == left_name:
            right_name = f"{right_name}_related"

        return self._replace_table(
            f"{left.name}_{right.name}",
            [
                Column(left_name, left_col.type, sa.ForeignKey(left_col), primary_key=True),
                Column(right_name, right_col.type, sa.ForeignKey(right_col), primary_key=True),
            ],
            left.table.schema,
        )


def _ping(conn_or_engine) -> None:
    if isinstance(conn_or_engine, Connection):
        conn_or_engine.execute(sa.select(sa.literal(1)))
        return
    with conn_or_engine.connect() as conn:
        conn.execute(sa.select(sa.literal(1)))
