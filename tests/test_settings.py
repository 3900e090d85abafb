"""Tests for YAML settings loading."""
import textwrap

from config.settings import Settings, load_settings


def _write(tmp_path, content):
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(content))
    return str(path)


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == Settings()
        assert settings.database.store_backend == "memory"
        assert settings.engine.step_budget == 50

    def test_sections(self, tmp_path):
        path = _write(tmp_path, """
            app_name: Demo
            database:
              store_backend: file
              store_file_dir: /tmp/flows
            engine:
              step_budget: 20
              lease_wait_seconds: 1
            whatsapp:
              phone_number_id: 12345
              access_token: abc
            logging:
              level: debug
              json: true
        """)
        settings = load_settings(path)
        assert settings.app_name == "Demo"
        assert settings.database.store_backend == "file"
        assert settings.database.url == "sqlite:///./flowrunner.db"
        assert settings.engine.step_budget == 20
        assert settings.engine.lease_wait_seconds == 1.0
        assert settings.engine.max_delivery_failures == 3
        assert settings.whatsapp.phone_number_id == "12345"
        assert settings.logging.level == "DEBUG"
        assert settings.logging.json is True

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CRM_TOKEN", "secret")
        path = _write(tmp_path, """
            crm:
              base_url: https://crm.test
              auth_credentials:
                token: ${CRM_TOKEN}
                other: ${NOT_SET_ANYWHERE}
        """)
        crm = load_settings(path).crm
        assert crm.auth_credentials == {"token": "secret", "other": "${NOT_SET_ANYWHERE}"}

    def test_path_from_environment(self, tmp_path, monkeypatch):
        path = _write(tmp_path, "app_name: FromEnv\n")
        monkeypatch.setenv("FLOWRUNNER_CONFIG", path)
        assert load_settings().app_name == "FromEnv"

    def test_empty_file(self, tmp_path):
        assert load_settings(_write(tmp_path, "")) == Settings()
