"""End-to-end tests of a sync run against fake store and service manager."""
import json
import os
import logging
from argparse import Namespace
from unittest import mock

import pytest

from agent_optoolkit.secrets.domains.errors import (
    AuthError,
    ConfigError,
    FetchError,
    FetchErrorKind,
    FileSystemError,
    ReconciliationError,
    ServiceControlError,
)
from agent_optoolkit.secrets.domains.filesystem import LOCK_FILE_NAME, RunLock
from agent_optoolkit.secrets.domains.models import DesktopAgentAccount, ServiceAccountToken
from agent_optoolkit.secrets.workflows.secret_sync import (
    TOKEN_FILE_ENV,
    WRITE_PROBE_NAME,
    RunOptions,
    resolve_token_file,
    run_secret_sync,
)

DB_REF = "op://V/I/F"
API_REF = "op://V/Api/key"


@pytest.fixture
def token_file(tmp_path):
    path = tmp_path / "token"
    path.write_text("ops_test")
    path.chmod(0o600)
    return path


@pytest.fixture
def config_file(tmp_path):
    config = {
        "secrets": [
            {"key": "db-password", "vaultRef": {"vault": "V", "item": "I", "field": "F"},
             "outputFile": "db-password"},
            {"key": "api-key", "reference": API_REF, "outputFile": "api/key"},
        ],
        "systemdIntegration": {
            "enable": True,
            "services": [
                {"name": "postgres.service", "dependsOnKeys": ["db-password"], "action": "restart"},
                {"name": "api.service", "dependsOnKeys": ["api-key"], "action": "reload"},
            ],
        },
    }
    path = tmp_path / "secrets.json"
    path.write_text(json.dumps(config))
    return path


@pytest.fixture
def options(tmp_path, config_file, token_file, no_wait_policy):
    return RunOptions(
        config_path=config_file,
        output_dir=tmp_path / "secrets",
        token_file=token_file,
        retry_policy=no_wait_policy,
    )


class TestScenario:

    def test_three_runs(self, options, fake_store, controller):
        out = options.output_dir
        fake_store.set(DB_REF, b"s3cr3t")
        fake_store.set(API_REF, b"api-1")

        # Run 1: first materialization, both services act
        report = run_secret_sync(options, client=fake_store, controller=controller)
        assert (out / "db-password").read_bytes() == b"s3cr3t"
        assert (out / "api" / "key").read_bytes() == b"api-1"
        assert controller.actions == [("postgres.service", "restart"), ("api.service", "reload")]
        assert report.reconciliation.ok

        # Run 2: nothing changed remotely
        controller.actions.clear()
        report = run_secret_sync(options, client=fake_store, controller=controller)
        assert report.process_result.changed_keys == frozenset()
        assert controller.actions == []

        # Run 3: only the db password changed
        fake_store.set(DB_REF, b"n3wpass")
        report = run_secret_sync(options, client=fake_store, controller=controller)
        assert (out / "db-password").read_bytes() == b"n3wpass"
        assert controller.actions == [("postgres.service", "restart")]
        assert report.process_result.changed == {"api-key": False, "db-password": True}

    def test_lock_released_after_run(self, options, fake_store, controller):
        fake_store.set(DB_REF, b"a")
        fake_store.set(API_REF, b"b")

        run_secret_sync(options, client=fake_store, controller=controller)

        assert not (options.output_dir / LOCK_FILE_NAME).exists()


class TestFailures:

    def test_concurrent_run_rejected(self, options, fake_store, controller):
        fake_store.set(DB_REF, b"a")
        fake_store.set(API_REF, b"b")
        options.output_dir.mkdir()

        with RunLock(options.output_dir):
            with pytest.raises(FileSystemError) as exc_info:
                run_secret_sync(options, client=fake_store, controller=controller)

        assert "lock" in str(exc_info.value).lower()
        assert fake_store.calls == []

    def test_lock_released_after_fetch_failure(self, options, fake_store, controller):
        fake_store.set(DB_REF, FetchError(FetchErrorKind.NOT_FOUND, "gone"))
        fake_store.set(API_REF, b"b")

        with pytest.raises(FetchError):
            run_secret_sync(options, client=fake_store, controller=controller)

        assert not (options.output_dir / LOCK_FILE_NAME).exists()
        assert controller.actions == []

    def test_auth_failure_aborts_before_writes(self, options, fake_store, controller):
        fake_store.auth_error = AuthError("token rejected", stage="Authenticating")

        with pytest.raises(AuthError):
            run_secret_sync(options, client=fake_store, controller=controller)

        assert fake_store.calls == []
        assert sorted(p.name for p in options.output_dir.iterdir()) == []

    def test_missing_config_file(self, options, fake_store, tmp_path):
        options.config_path = tmp_path / "absent.json"

        with pytest.raises(FileSystemError) as exc_info:
            run_secret_sync(options, client=fake_store)

        assert "Configuration file does not exist" in str(exc_info.value)
        assert fake_store.auth_calls == []

    def test_duplicate_key_rejected_before_auth(self, options, fake_store, config_file):
        config = json.loads(config_file.read_text())
        config["secrets"][1]["key"] = "db-password"
        config["systemdIntegration"]["services"] = []
        config_file.write_text(json.dumps(config))

        with pytest.raises(ConfigError):
            run_secret_sync(options, client=fake_store)

        assert fake_store.auth_calls == []
        assert fake_store.calls == []

    def test_duplicate_resolved_path_rejected_before_auth(self, options, fake_store, config_file):
        config = json.loads(config_file.read_text())
        config["secrets"][0]["outputFile"] = "shared"
        config["secrets"][1]["outputFile"] = str(options.output_dir / "shared")
        config_file.write_text(json.dumps(config))

        with pytest.raises(ConfigError) as exc_info:
            run_secret_sync(options, client=fake_store)

        assert "same file" in str(exc_info.value)
        assert fake_store.auth_calls == []
        assert fake_store.calls == []

    def test_service_failure_keeps_written_secrets(self, options, fake_store, make_controller):
        fake_store.set(DB_REF, b"a")
        fake_store.set(API_REF, b"b")
        controller = make_controller(failures={"postgres.service": "Unit postgres.service not found."})

        with pytest.raises(ReconciliationError) as exc_info:
            run_secret_sync(options, client=fake_store, controller=controller)

        assert (options.output_dir / "db-password").read_bytes() == b"a"
        assert [o.service_name for o in exc_info.value.result.succeeded] == ["api.service"]
        assert not (options.output_dir / LOCK_FILE_NAME).exists()

    def test_missing_systemctl(self, options, fake_store):
        fake_store.set(DB_REF, b"a")
        fake_store.set(API_REF, b"b")

        with mock.patch("agent_optoolkit.secrets.domains.service_control.shutil.which", return_value=None):
            with pytest.raises(ServiceControlError) as exc_info:
                run_secret_sync(options, client=fake_store)

        assert "systemctl" in str(exc_info.value)
        assert (options.output_dir / "db-password").exists()


class TestOptions:

    def test_token_hygiene_is_only_a_warning(self, options, fake_store, controller, token_file, caplog):
        token_file.chmod(0o644)
        fake_store.set(DB_REF, b"a")
        fake_store.set(API_REF, b"b")

        with caplog.at_level(logging.WARNING):
            report = run_secret_sync(options, client=fake_store, controller=controller)

        assert any("world-readable" in w for w in report.warnings)
        assert "world-readable" in caplog.text
        assert report.process_result.processed_count == 2

    def test_desktop_integration_skips_token_checks(self, options, fake_store, controller, tmp_path):
        options.token_file = tmp_path / "absent"
        options.desktop_account = "my-team"
        fake_store.set(DB_REF, b"a")
        fake_store.set(API_REF, b"b")

        report = run_secret_sync(options, client=fake_store, controller=controller)

        assert report.warnings == []
        assert fake_store.auth_calls == [DesktopAgentAccount("my-team")]

    def test_token_source_by_default(self, options):
        assert options.credential_source == ServiceAccountToken(options.token_file)

    def test_restart_on_change_disabled(self, options, fake_store, controller, config_file):
        config = json.loads(config_file.read_text())
        config["systemdIntegration"]["restartOnChange"] = False
        config_file.write_text(json.dumps(config))
        fake_store.set(DB_REF, b"a")
        fake_store.set(API_REF, b"b")

        run_secret_sync(options, client=fake_store, controller=controller)

        assert controller.actions == []

    def test_systemd_disabled(self, options, fake_store, controller, config_file):
        config = json.loads(config_file.read_text())
        config["systemdIntegration"]["enable"] = False
        config_file.write_text(json.dumps(config))
        fake_store.set(DB_REF, b"a")
        fake_store.set(API_REF, b"b")

        report = run_secret_sync(options, client=fake_store, controller=controller)

        assert report.reconciliation is None
        assert controller.actions == []

    def test_write_check_leaves_other_runs_probe_alone(self, options, fake_store, controller):
        options.output_dir.mkdir()
        foreign = options.output_dir / f"{WRITE_PROBE_NAME}.{os.getpid() + 1}"
        foreign.write_bytes(b"test")
        fake_store.set(DB_REF, b"a")
        fake_store.set(API_REF, b"b")

        run_secret_sync(options, client=fake_store, controller=controller)

        assert foreign.exists()
        assert not (options.output_dir / f"{WRITE_PROBE_NAME}.{os.getpid()}").exists()

    def test_resolve_token_file_priority(self, monkeypatch):
        monkeypatch.setenv(TOKEN_FILE_ENV, "/from/env")
        assert str(resolve_token_file("/explicit")) == "/explicit"
        assert str(resolve_token_file()) == "/from/env"
        monkeypatch.delenv(TOKEN_FILE_ENV)
        assert str(resolve_token_file()) == "/etc/optoolkit-token"


class TestSecretCommand:

    def _args(self, options, **overrides):
        values = dict(
            config=str(options.config_path),
            output=str(options.output_dir),
            token_file=str(options.token_file),
            desktop_integration=None,
            workers=4,
            verbose=False,
        )
        values.update(overrides)
        return Namespace(**values)

    def test_exit_zero_on_success(self, options, fake_store, controller, capsys):
        from agent_optoolkit.cli import main as cli

        fake_store.set(DB_REF, b"a")
        fake_store.set(API_REF, b"b")
        real_run = run_secret_sync

        def run(opts):
            return real_run(opts, client=fake_store, controller=controller)

        with mock.patch("agent_optoolkit.secrets.workflows.secret_sync.run_secret_sync", run):
            with pytest.raises(SystemExit) as exc_info:
                cli.cmd_secret(self._args(options))

        assert exc_info.value.code == 0
        assert "Processed 2 secrets" in capsys.readouterr().out

    def test_exit_one_on_fatal_error(self, options, capsys):
        from agent_optoolkit.cli import main as cli

        error = AuthError("token rejected", stage="Authenticating with 1Password",
                          suggestions=["Check the token"])
        with mock.patch("agent_optoolkit.secrets.workflows.secret_sync.run_secret_sync", side_effect=error):
            with pytest.raises(SystemExit) as exc_info:
                cli.cmd_secret(self._args(options))

        assert exc_info.value.code == 1
        err = capsys.readouterr().err
        assert "Authenticating with 1Password failed: token rejected" in err
        assert "- Check the token" in err

    def test_exit_two_on_bad_account(self, options):
        from agent_optoolkit.cli import main as cli

        with pytest.raises(SystemExit) as exc_info:
            cli.cmd_secret(self._args(options, desktop_integration="bad name"))

        assert exc_info.value.code == 2
