"""Limits applied to record payloads arriving through share links and bulk import."""

from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from records.models import MAX_PLAYER_NAME_LENGTH, MAX_PLAYERS, MAX_ROUNDS, MAX_SCORE, GameMode
from shared.validators import StringListEnvSettingsSource, parse_string_list

if TYPE_CHECKING:
    from pydantic_settings.sources.base import PydanticBaseSettingsSource


_LIST_FIELDS = frozenset({"valid_game_modes"})

class ShareSettings(BaseSettings):
    model_config = {"env_prefix": "SHARE_"}

    max_decoded_size: int = Field(default=1024 * 1024, gt=0)  # 1 MiB
    max_player_name_length: int = Field(default=MAX_PLAYER_NAME_LENGTH, gt=0, le=MAX_PLAYER_NAME_LENGTH)
    max_game_name_length: int = 100
    max_id_length: int = 50
    max_players: int = Field(default=MAX_PLAYERS, gt=0, le=MAX_PLAYERS)
    max_rounds: int = Field(default=MAX_ROUNDS, ge=0, le=MAX_ROUNDS)
    max_score: int = Field(default=MAX_SCORE, gt=0, le=MAX_SCORE)
    max_duration_seconds: int = 86400  # 24 hours
    max_records_per_import: int = 100
    valid_game_modes: list[str] = [mode.value for mode in GameMode]
    # Lifetime of a legacy bulk share key stashed on this device
    share_key_ttl_seconds: int = 3600
    base_url: str = "http://localhost:5173"

    @field_validator("valid_game_modes", mode="before")
    @classmethod
    def validate_game_modes(cls, v: str | list[str]) -> list[str]:
        modes = parse_string_list(v)
        known = {mode.value for mode in GameMode}
        unknown = [m for m in modes if m not in known]
        if unknown:
            raise ValueError(f"Unknown game modes: {', '.join(unknown)}")
        return modes

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
