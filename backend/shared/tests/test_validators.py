import pytest

from remote.settings import RemoteServerSettings
from share.settings import ShareSettings
from shared.validators import parse_string_list


class TestParseStringList:
    def test_json_array_string(self):
        assert parse_string_list('["Local","Online"]') == ["Local", "Online"]

    def test_comma_separated_with_whitespace(self):
        assert parse_string_list("Local , Tournament") == ["Local", "Tournament"]

    def test_passthrough_list(self):
        modes = ["Local", "Online"]
        assert parse_string_list(modes) == modes

    def test_comma_separated_skips_empty_segments(self):
        assert parse_string_list("Local,,Online,") == ["Local", "Online"]

    @pytest.mark.parametrize("value", ["", "   ", ",", ",,,", "[]", []])
    def test_empty_values_raise(self, value):
        with pytest.raises(ValueError, match="must not be empty"):
            parse_string_list(value)

    @pytest.mark.parametrize("value", ["", "[]", []])
    def test_allow_empty_returns_empty_list(self, value):
        assert parse_string_list(value, allow_empty=True) == []

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError, match="Invalid JSON array"):
            parse_string_list('["Local",')

    def test_repeated_entries_dropped_in_order(self):
        assert parse_string_list("Online,Local,Online") == ["Online", "Local"]

    def test_json_mixed_types_array_raises(self):
        with pytest.raises(ValueError, match="array of strings"):
            parse_string_list('["Local", 1]')


class TestStringListEnvSource:
    def test_game_modes_from_csv_env(self, monkeypatch):
        monkeypatch.setenv("SHARE_VALID_GAME_MODES", "Local,Online")

        assert ShareSettings().valid_game_modes == ["Local", "Online"]

    def test_game_modes_from_json_env(self, monkeypatch):
        monkeypatch.setenv("SHARE_VALID_GAME_MODES", '["Tournament"]')

        assert ShareSettings().valid_game_modes == ["Tournament"]

    def test_unknown_game_mode_rejected(self, monkeypatch):
        monkeypatch.setenv("SHARE_VALID_GAME_MODES", "Local,Blitz")

        with pytest.raises(ValueError, match="Unknown game modes: Blitz"):
            ShareSettings()

    def test_cors_origins_may_be_empty(self, monkeypatch):
        monkeypatch.setenv("REMOTE_CORS_ORIGINS", "")

        assert RemoteServerSettings().cors_origins == []

    def test_cors_origins_from_csv_env(self, monkeypatch):
        monkeypatch.setenv("REMOTE_CORS_ORIGINS", "http://a.test,http://b.test")

        assert RemoteServerSettings().cors_origins == ["http://a.test", "http://b.test"]

    def test_repeated_game_mode_listed_once(self, monkeypatch):
        monkeypatch.setenv("SHARE_VALID_GAME_MODES", "Online,Local,Online")

        assert ShareSettings().valid_game_modes == ["Online", "Local"]
