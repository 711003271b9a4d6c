# src/model_loader/config.py
from __future__ import annotations

import pickle
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Literal, Mapping, Optional, cast
import contextvars

import structlog
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import PydanticBaseSettingsSource
from sqlalchemy.engine import URL


class ConfigError(RuntimeError):
    """Configuration-related error."""
    pass


# ---------------------------------------------------------------------------
# Config file support (context + loader)
# ---------------------------------------------------------------------------

_CONFIG_FILE_CTX: contextvars.ContextVar[Path | None] = contextvars.ContextVar(
    "MODEL_LOADER_CONFIG_FILE_CTX",
    default=None,
)


def _find_default_config_file() -> Path | None:
    """First of config.toml / config.yaml / config.yml found in the working directory."""
    cwd = Path.cwd()
    for name in ("config.toml", "config.yaml", "config.yml"):
        p = cwd / name
        if p.is_file():
            return p
    return None


def _load_toml(path: Path) -> dict[str, Any]:
    import tomllib

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid TOML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} did not parse into a dict")
    return cast(dict[str, Any], data)


def _load_yaml(path: Path) -> dict[str, Any]:
    import yaml

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} did not parse into a dict")
    return cast(dict[str, Any], data)


def _load_config_file(path: Path) -> dict[str, Any]:
    suffix = path.suffix.lower()
    if suffix == ".toml":
        return _load_toml(path)
    if suffix in {".yaml", ".yml"}:
        return _load_yaml(path)
    raise ConfigError(f"Unsupported config file type: {path} (expected .toml/.yaml/.yml)")


class _ConfigFileSettingsSource(PydanticBaseSettingsSource):
    """Reads the TOML/YAML file selected by `get_settings`, if any."""

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        # Values come from __call__ as one mapping.
        raise NotImplementedError

    def __call__(self) -> dict[str, Any]:
        path = _CONFIG_FILE_CTX.get()
        if path is None:
            return {}

        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")

        return _load_config_file(path)


@contextmanager
def _config_file_context(path: Path | None) -> Any:
    token = _CONFIG_FILE_CTX.set(path)
    try:
        yield
    finally:
        _CONFIG_FILE_CTX.reset(token)


# ─────────────────────────────────────────────────────────────
# Section configs
# ─────────────────────────────────────────────────────────────


class LoggingSettings(BaseModel):
    level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "INFO"
    renderer: Literal["console", "json"] = Field(
        "console",
        description="structlog renderer: 'console' for humans, 'json' for log shippers.",
    )


Dialect = Literal["postgresql", "sqlite"]


class DatabaseSettings(BaseModel):
    """
    SQLAlchemy database configuration used when the loader builds its own client.

    Preference order:
    1) If `url` is set, use it as-is.
    2) Otherwise build a SQLAlchemy URL from the components.
    """

    url: str | None = Field(default=None, description="Full SQLAlchemy URL; overrides the components below.")

    dialect: Dialect = Field("sqlite", description="Database dialect.")
    driver: str | None = Field(
        None,
        description="Driver name, e.g. psycopg/psycopg2 for Postgres, pysqlite for SQLite.",
    )

    host: str = Field("localhost", description="Database host.")
    port: int = Field(5432, description="Database port.")
    database: str = Field("models", description="Database name.")
    username: str | None = Field(None, description="Database username.")
    password: SecretStr | None = Field(default=None, description="Database password (prefer secrets_dir).")

    sqlite_path: Path | None = Field(
        default=None,
        description="Path to SQLite file. If None, uses an in-memory DB.",
    )

    default_schema: str | None = Field(
        default=None,
        description="Optional default schema applied to every created table.",
    )

    pool_pre_ping: bool = True

    def sqlalchemy_url(self) -> URL | str:
        if self.url:
            return self.url

        if self.dialect == "sqlite":
            if self.sqlite_path is None:
                return URL.create("sqlite+pysqlite", database=":memory:")
            return URL.create("sqlite+pysqlite", database=str(self.sqlite_path))

        driver_suffix = f"+{self.driver}" if self.driver else ""
        return URL.create(
            drivername=f"{self.dialect}{driver_suffix}",
            username=self.username,
            password=self.password.get_secret_value() if self.password else None,
            host=self.host,
            port=self.port,
            database=self.database,
        )


def _console_log(message: str) -> None:
    structlog.get_logger("model_loader").info(message)


class LoaderConfig(BaseModel):
    """
    Options for a single load.

    Every field has a default, so a partial mapping is completed key by key.
    Keys may be given in snake_case or camelCase (`ignoreModels`,
    `modelsPath`, ...); `thinky` is accepted as a name for `database`.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
        extra="ignore",
    )

    debug: bool = Field(False, description="Emit lifecycle messages through `log`.")
    log: Callable[[str], Any] = Field(_console_log, description="Single-argument sink for lifecycle messages.")
    ignore_models: list[str] = Field(default_factory=list, alias="ignoreModels")
    model_constructor_args: list[Any] = Field(default_factory=list, alias="modelConstructorArgs")
    model_initialize_args: list[Any] = Field(default_factory=list, alias="modelInitializeArgs")
    models_path: Path | None = Field(None, alias="modelsPath", description="Directory of definition modules.")
    entry_point_group: str | None = Field(
        None,
        alias="entryPointGroup",
        description="Entry point group to load definitions from when no path is given.",
    )
    database: DatabaseSettings = Field(default_factory=DatabaseSettings, alias="thinky")
    install: bool = Field(False, description="Create missing tables after all models are initialized.")


def parse_config(config: LoaderConfig | Mapping[str, Any] | None = None) -> LoaderConfig:
    """
    Fill in defaults for every option the caller left out.

    The merge is shallow: a key that is present replaces its default outright.
    """
    if config is None:
        return LoaderConfig()
    if isinstance(config, LoaderConfig):
        return config
    return LoaderConfig.model_validate(dict(config))


# ─────────────────────────────────────────────────────────────
# Top-level settings
# ─────────────────────────────────────────────────────────────


class AppSettings(BaseSettings):
    """
    Settings for a service that uses model_loader.

    Sources, strongest first: keyword arguments, `MODEL_LOADER_*` environment
    variables, `.env`/`.env.local`, files under /run/secrets/model_loader, the
    config file, then the defaults below. Nested keys use `__` in env names
    (`MODEL_LOADER_LOADER__MODELS_PATH`).
    """

    model_config = SettingsConfigDict(
        env_prefix="MODEL_LOADER_",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        secrets_dir="/run/secrets/model_loader",
        extra="ignore",
        validate_default=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
            _ConfigFileSettingsSource(settings_cls),
        )

    app_name: str = "model-loader"

    logging: LoggingSettings = LoggingSettings()
    loader: LoaderConfig = LoaderConfig()


@lru_cache(maxsize=16)
def _get_settings_cached(config_file_str: str | None, overrides_blob: bytes) -> AppSettings:
    overrides = pickle.loads(overrides_blob)
    config_path = Path(config_file_str) if config_file_str is not None else None
    with _config_file_context(config_path):
        return AppSettings(**overrides)


def get_settings(*, config_file: str | Path | None = None, **overrides: Any) -> AppSettings:
    """
    Build (or reuse) the AppSettings for this config file and override set.

    Keyword overrides beat every other source. Without `config_file` the
    working directory is searched; when nothing is found only env, secrets
    and defaults are used.
    """
    resolved: Optional[Path]
    if config_file is None:
        resolved = _find_default_config_file()
    else:
        resolved = Path(config_file)

    overrides_blob = pickle.dumps(overrides, protocol=pickle.HIGHEST_PROTOCOL)
    return _get_settings_cached(str(resolved) if resolved is not None else None, overrides_blob)


def clear_settings_cache() -> None:
    _get_settings_cached.cache_clear()
