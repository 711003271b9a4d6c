# tests/test_loader.py
from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import sqlalchemy as sa

from model_loader import Definition, Loader, OrmClient, initialize
from model_loader.exceptions import ModelDefinitionError, ModelDiscoveryError


class User(Definition):
    table_name = "users"
    schema = {"name": str}


class Post(Definition):
    global_id = "posts"
    schema = {"title": str}

    def initialize(self, loader, model, *args):
        # Cross-model wiring: only safe if every schema was registered first.
        model.link(loader.models["users"])


# -----------------------------
# Scenarios
# -----------------------------


@pytest.mark.asyncio
async def test_single_definition_registered_without_logging(client):
    log = MagicMock()

    loader = await initialize({"log": log}, client, definitions={"user": User})

    assert "users" in loader.models
    assert loader.models["users"].schema == {"name": str}
    assert loader.client is client
    log.assert_not_called()


@pytest.mark.asyncio
async def test_ignored_definition_is_not_registered(client):
    loader = await initialize({"ignoreModels": ["user"]}, client, definitions={"user": User})

    assert "users" not in loader.models
    assert loader.models == {}


@pytest.mark.asyncio
async def test_initialize_hook_sees_models_registered_later_in_order(client):
    # posts is listed first, but its hook still finds users.
    loader = await initialize({}, client, definitions=[("post", Post), ("user", User)])

    assert loader.models["posts"].links == ["users"]
    kinds = [c[0] for c in client.calls]
    assert kinds == ["db_ready", "create_model", "create_model"]


@pytest.mark.asyncio
async def test_readiness_failure_propagates_and_leaves_models_empty(client):
    boom = ConnectionError("db down")
    client.db_ready.side_effect = boom
    loader = Loader()

    with pytest.raises(ConnectionError) as excinfo:
        await loader.initialize({}, client, definitions={"user": User})

    assert excinfo.value is boom
    assert loader.models == {}
    assert client.calls == []


# -----------------------------
# Properties
# -----------------------------


@pytest.mark.asyncio
async def test_registry_keys_are_resolved_ids_minus_ignored(client):
    class Comment(Definition):
        table_name = "comments"
        schema = {"body": str}

    loader = await initialize(
        {"ignore_models": ["comment"]},
        client,
        definitions={"user": User, "post": Post, "comment": Comment},
    )

    assert set(loader.models) == {"users", "posts"}


@pytest.mark.asyncio
async def test_ignore_models_matches_resolved_ids(client):
    init_calls: list[str] = []

    class Comment(Definition):
        table_name = "comments"
        schema = {"body": str}

        def initialize(self, loader, model, *args):
            init_calls.append(model.name)

    loader = await initialize(
        {"ignoreModels": ["comments"]},
        client,
        definitions={"user": User, "comment": Comment},
    )

    assert set(loader.models) == {"users"}
    assert ("create_model", "comments") not in client.calls
    assert init_calls == []


@pytest.mark.asyncio
async def test_all_schemas_registered_before_any_hook(client):
    order: list[str] = []

    class Tracking(Definition):
        schema = {}

        def initialize(self, loader, model, *args):
            order.append(f"init:{model.name}")

    def make(name):
        return type(name, (Tracking,), {"table_name": name})

    orig_create = client.create_model

    def create(model_id, schema, options):
        order.append(f"create:{model_id}")
        return orig_create(model_id, schema, options)

    client.create_model = create

    await initialize({}, client, definitions={"a": make("a"), "b": make("b"), "c": make("c")})

    assert order == ["create:a", "create:b", "create:c", "init:a", "init:b", "init:c"]


@pytest.mark.asyncio
async def test_second_load_replaces_models_instead_of_merging(client):
    class Tag(Definition):
        table_name = "tags"
        schema = {"label": str}

    loader = Loader()
    await loader.initialize({}, client, definitions={"user": User, "post": Post})
    assert set(loader.models) == {"users", "posts"}

    await loader.initialize({}, client, definitions={"tag": Tag})
    assert set(loader.models) == {"tags"}


@pytest.mark.asyncio
async def test_duplicate_ids_overwrite_silently(client):
    class Members(Definition):
        table_name = "users"
        schema = {"handle": str}

    loader = await initialize({}, client, definitions=[("user", User), ("member", Members)])

    assert list(loader.models) == ["users"]
    assert loader.models["users"].schema == {"handle": str}


@pytest.mark.asyncio
async def test_constructor_and_initialize_args_are_forwarded(client):
    seen = {}

    class Configured(Definition):
        table_name = "things"
        schema = {}

        def __init__(self, loader, *args):
            super().__init__(loader, *args)
            seen["ctor"] = (loader, args)

        def initialize(self, loader, model, *args):
            seen["init"] = (loader, model, args)

    loader = await initialize(
        {"modelConstructorArgs": ["db", 1], "modelInitializeArgs": ["hooks"]},
        client,
        definitions={"thing": Configured},
    )

    assert seen["ctor"] == (loader, ("db", 1))
    assert seen["init"] == (loader, loader.models["things"], ("hooks",))


@pytest.mark.asyncio
async def test_debug_logs_lifecycle_messages(client):
    messages: list[str] = []

    await initialize(
        {"debug": True, "log": messages.append},
        client,
        definitions=[("user", User), ("post", Post)],
    )

    assert messages == [
        "DB Ready",
        "Creating model id: users",
        "Creating model id: posts",
        "Initializing model id: users",
        "Initializing model id: posts",
    ]


@pytest.mark.asyncio
async def test_install_flag_calls_client_install(client):
    await initialize({"install": True}, client, definitions={"user": User})
    assert client.installed is True


# -----------------------------
# Errors
# -----------------------------


@pytest.mark.asyncio
async def test_definition_without_id_fails_fast(client):
    class Anonymous(Definition):
        schema = {"x": int}

    loader = Loader()
    with pytest.raises(ModelDefinitionError, match="table_name or global_id"):
        await loader.initialize({}, client, definitions=[("user", User), ("anon", Anonymous)])

    # users was registered before the failure and is kept.
    assert set(loader.models) == {"users"}


@pytest.mark.asyncio
async def test_hook_failure_keeps_pass_one_registrations(client):
    class Broken(Definition):
        table_name = "broken"
        schema = {}

        def initialize(self, loader, model, *args):
            raise ValueError("bad relation")

    loader = Loader()
    with pytest.raises(ValueError, match="bad relation"):
        await loader.initialize({}, client, definitions=[("broken", Broken), ("user", User)])

    assert set(loader.models) == {"broken", "users"}


@pytest.mark.asyncio
async def test_constructor_signature_mismatch_is_reported(client):
    class NoArgs:
        def __init__(self):
            pass

    with pytest.raises(ModelDefinitionError, match="'noargs'"):
        await initialize({}, client, definitions={"noargs": NoArgs})


@pytest.mark.asyncio
async def test_no_definition_source_is_an_error(client):
    with pytest.raises(ModelDiscoveryError, match="No definition source"):
        await initialize({}, client)


# -----------------------------
# With the SQLAlchemy client
# -----------------------------


class Author(Definition):
    table_name = "authors"
    schema = {"name": str}

    def initialize(self, loader, model, *args):
        model.has_many(loader.models["articles"], "articles", right_key="author_id")


class Article(Definition):
    table_name = "articles"
    schema = {"title": str, "author_id": str}

    def initialize(self, loader, model, *args):
        model.belongs_to(loader.models["authors"], "author", left_key="author_id")


@pytest.mark.asyncio
async def test_loads_into_sqlalchemy_and_installs_tables(engine):
    orm = OrmClient(engine)

    loader = await initialize(
        {"install": True},
        orm,
        definitions={"author": Author, "article": Article},
    )

    assert orm.missing_tables() == []
    insp = sa.inspect(engine)
    assert set(insp.get_table_names()) == {"authors", "articles"}
    fks = insp.get_foreign_keys("articles")
    assert {fk["referred_table"] for fk in fks} == {"authors"}

    with engine.begin() as conn:
        conn.execute(loader.models["authors"].insert(), [{"id": "a1", "name": "Ada"}])
        conn.execute(loader.models["articles"].insert(), [{"title": "Notes", "author_id": "a1"}])
        rows = conn.execute(loader.models["articles"].select()).mappings().all()

    assert rows[0]["author_id"] == "a1"
    assert len(rows[0]["id"]) == 36
    assert loader.models["authors"].get_relation("articles").kind == "has_many"


@pytest.mark.asyncio
async def test_reload_with_same_client_installs_only_current_models(engine):
    class Tag(Definition):
        table_name = "tags"
        schema = {"label": str}

    orm = OrmClient(engine)
    loader = Loader()

    await loader.initialize({}, orm, definitions={"author": Author, "article": Article})
    assert set(orm.metadata.tables) == {"authors", "articles"}

    await loader.initialize({"install": True}, orm, definitions={"tag": Tag})

    assert set(loader.models) == {"tags"}
    assert set(orm.metadata.tables) == {"tags"}
    assert set(sa.inspect(engine).get_table_names()) == {"tags"}


@pytest.mark.asyncio
async def test_builds_default_client_from_database_settings():
    loader = await initialize(
        {"thinky": {"dialect": "sqlite"}, "install": True},
        definitions={"user": User},
    )

    assert isinstance(loader.client, OrmClient)
    assert loader.client.missing_tables() == []
