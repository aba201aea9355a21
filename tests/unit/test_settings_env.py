"""GOVFLOW_* environment settings."""

import pytest

from govflow_kernel.settings import GovflowSettings


class TestFromEnv:

    def test_defaults_on_empty_environment(self):
        settings = GovflowSettings.from_env({})

        assert settings == GovflowSettings()
        assert settings.database_url == "sqlite:///govflow.db"
        assert settings.workflow_dir is None
        assert settings.dispatch_max_attempts == 5
        assert settings.sweep_interval == 60.0

    def test_values_parsed(self):
        settings = GovflowSettings.from_env({
            "GOVFLOW_DATABASE_URL": "postgresql+psycopg://govflow@db/govflow",
            "GOVFLOW_WORKFLOW_DIR": "/etc/govflow/sets",
            "GOVFLOW_LOG_LEVEL": "debug",
            "GOVFLOW_DISPATCH_MAX_ATTEMPTS": "8",
            "GOVFLOW_DISPATCH_BASE_DELAY": "2.5",
            "GOVFLOW_DISPATCH_MAX_DELAY": "600",
            "GOVFLOW_DISPATCH_WORKERS": "4",
            "GOVFLOW_CONFLICT_RETRIES": "5",
            "GOVFLOW_SWEEP_INTERVAL": "15",
        })

        assert settings.database_url == "postgresql+psycopg://govflow@db/govflow"
        assert settings.workflow_dir == "/etc/govflow/sets"
        assert settings.log_level == "DEBUG"
        assert settings.dispatch_max_attempts == 8
        assert settings.dispatch_base_delay == 2.5
        assert settings.dispatch_max_delay == 600.0
        assert settings.dispatch_workers == 4
        assert settings.max_conflict_retries == 5
        assert settings.sweep_interval == 15.0

    def test_empty_value_falls_back_to_default(self):
        settings = GovflowSettings.from_env({"GOVFLOW_DISPATCH_WORKERS": ""})
        assert settings.dispatch_workers == 2

    def test_unprefixed_names_ignored(self):
        assert GovflowSettings.from_env({"DATABASE_URL": "sqlite://"}).database_url == \
            "sqlite:///govflow.db"

    @pytest.mark.parametrize("name,raw", [
        ("GOVFLOW_DISPATCH_MAX_ATTEMPTS", "five"),
        ("GOVFLOW_DISPATCH_WORKERS", "2.5"),
        ("GOVFLOW_SWEEP_INTERVAL", "soon"),
    ])
    def test_bad_number_rejected(self, name, raw):
        with pytest.raises(ValueError, match=f"Invalid value for {name}"):
            GovflowSettings.from_env({name: raw})

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("GOVFLOW_CONFLICT_RETRIES", "7")
        assert GovflowSettings.from_env().max_conflict_retries == 7
