"""Reference remote record server configuration via environment variables."""

from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from shared.validators import StringListEnvSettingsSource, parse_string_list

if TYPE_CHECKING:
    from pydantic_settings.sources.base import PydanticBaseSettingsSource


_LIST_FIELDS = frozenset({"cors_origins"})

class RemoteServerSettings(BaseSettings):
    model_config = {"env_prefix": "REMOTE_"}

    database_path: str = Field(default="backend/data/scoresync.db", min_length=1)
    log_dir: str = "backend/logs/remote"
    # When set, every records endpoint requires "Authorization: Bearer <api_token>"
    api_token: str | None = None
    max_records: int = Field(default=100_000, ge=1)
    max_candidates: int = Field(default=50, ge=1)
    cors_origins: list[str] = []

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: str | list[str]) -> list[str]:
        return parse_string_list(v, allow_empty=True)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        env_lists = StringListEnvSettingsSource(settings_cls, _LIST_FIELDS)
        return (init_settings, env_lists, dotenv_settings, file_secret_settings)
