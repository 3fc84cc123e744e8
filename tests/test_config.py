import pytest

from provgraph.config import Settings, load_settings
from provgraph.errors import DefinitionError


class TestSettings:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        settings = load_settings()
        assert settings == Settings()
        assert settings.workers == 4
        assert settings.redaction_marker == "[secret]"

    def test_default_file_in_working_directory(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "provgraph.yaml").write_text("workers: 2\nbackoff_base: 1\n")
        settings = load_settings()
        assert settings.workers == 2
        assert settings.backoff_base == 1.0

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("max_attempts: 5\nstate_file: out/state.json\n")
        settings = load_settings(str(path))
        assert settings.max_attempts == 5
        assert settings.state_file == "out/state.json"

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("workers: 3\ncolour: blue\n")
        assert load_settings(str(path)).workers == 3

    @pytest.mark.parametrize("body", ["workers: many\n", "workers: 0\n", "- a\n- b\n", "workers: [1\n"])
    def test_invalid_settings(self, tmp_path, body):
        path = tmp_path / "bad.yaml"
        path.write_text(body)
        with pytest.raises(DefinitionError):
            load_settings(str(path))

    def test_override_ignores_none(self):
        settings = Settings().override(workers=8, state_file=None)
        assert settings.workers == 8
        assert settings.state_file == Settings().state_file
