"""List-valued settings shared by the share limits and the remote server config.

``SHARE_VALID_GAME_MODES`` and ``REMOTE_CORS_ORIGINS`` may be written either
as JSON arrays or as comma-separated values.
"""

import json
from typing import TYPE_CHECKING, Any

from pydantic_settings import EnvSettingsSource

if TYPE_CHECKING:
    from pydantic.fields import FieldInfo
    from pydantic_settings import BaseSettings


def _split(text: str) -> list[str]:
    if not text.startswith("["):
        return [item.strip() for item in text.split(",") if item.strip()]
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON array: {e}") from e
    if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
        raise ValueError("JSON value must be an array of strings")
    return parsed


def parse_string_list(value: str | list[str], *, allow_empty: bool = False) -> list[str]:
    """Parse a list setting, dropping repeated entries but keeping first-seen order.

    ``'Local,Online'``, ``'["Local","Online"]'`` and ``["Local", "Online"]``
    all give the same list. An empty result raises ValueError unless
    allow_empty is set.
    """
    items = value if isinstance(value, list) else _split(value.strip())
    items = list(dict.fromkeys(items))
    if not items and not allow_empty:
        raise ValueError("String list value must not be empty")
    return items


class StringListEnvSettingsSource(EnvSettingsSource):
    """Env source that hands the named list fields to validators as raw strings.

    pydantic-settings would otherwise JSON-decode list-typed env values before
    any validator runs, which rejects the comma-separated form.
    """

    def __init__(self, settings_cls: type[BaseSettings], list_fields: frozenset[str]) -> None:
        super().__init__(settings_cls)
        self._list_fields = list_fields

    def prepare_field_value(
        self,
        field_name: str,
        field: FieldInfo,
        value: Any,  # noqa: ANN401
        value_is_complex: bool,  # noqa: FBT001
    ) -> Any:  # noqa: ANN401
        if field_name in self._list_fields and isinstance(value, str):
            return value
        return super().prepare_field_value(field_name, field, value, value_is_complex)
