# test_cli.py
#
# Imports
import pytest
#
# Local Imports
from zonesync import cli, config
from zonesync.DB.Sync_Store_DB import SyncStoreDatabase
from zonesync.Sync.Sync_Server import ZoneSyncServer, make_error
from zonesync.sync_api.exceptions import SyncErrorCode


@pytest.fixture
def cli_env(tmp_path, mocker):
    """A config file pointing at a temporary store, an in-memory server and no log setup."""
    db_path = tmp_path / "data" / "store.db"
    config_path = tmp_path / "cli_config.toml"
    config_path.write_text(
        f'[database]\nstore_db_path = "{db_path.as_posix()}"\n'
        '[sync]\nmin_interval = 0.0\nbackoff_base = 0.0\nbackoff_max = 0.0\n'
    )
    server = ZoneSyncServer()
    mocker.patch("zonesync.cli.build_transport", return_value=server)
    mocker.patch("zonesync.cli.configure_logging")
    mocker.patch("zonesync.cli.signal.signal")
    return {"config": str(config_path), "db_path": db_path, "server": server}


def run(cli_env, *args):
    return cli.main(["--config", cli_env["config"], *args])


def open_store(cli_env):
    return SyncStoreDatabase(str(cli_env["db_path"]), client_id=config.DEFAULT_CLIENT_ID)


class TestCli:
    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_create_zone_then_sync(self, cli_env):
        assert run(cli_env, "create-zone", "notes") == 0
        assert run(cli_env, "sync") == 0
        assert cli_env["server"].zone_names() == ["notes"]

    def test_sync_pushes_local_records(self, cli_env):
        store = open_store(cli_env)
        store.save_record("notes", "a", "Note", {"title": "from cli"})
        store.close_connection()

        assert run(cli_env, "sync") == 0

        assert cli_env["server"].get_record("notes", "a").fields == {"title": "from cli"}

    def test_transient_error_exit_code(self, cli_env):
        run(cli_env, "create-zone", "notes")
        cli_env["server"].fail_next("modify_zones", make_error(SyncErrorCode.SERVICE_UNAVAILABLE))
        assert run(cli_env, "sync") == 2

    def test_fatal_error_exit_code(self, cli_env, capsys):
        run(cli_env, "create-zone", "notes")
        cli_env["server"].fail_next("modify_zones", make_error(SyncErrorCode.NOT_AUTHENTICATED, "token revoked"))
        assert run(cli_env, "sync") == 1
        assert "token revoked" in capsys.readouterr().out

    def test_status(self, cli_env, capsys):
        run(cli_env, "create-zone", "notes")
        assert run(cli_env, "status") == 0
        out = capsys.readouterr().out
        assert "pending_zone_changes" in out
        assert "notes" in out

    def test_reset_zone(self, cli_env):
        assert run(cli_env, "reset-zone", "missing") == 1
        cli_env["server"].server_save("notes", "a", "Note")
        run(cli_env, "sync")

        assert run(cli_env, "reset-zone", "notes") == 0

        store = open_store(cli_env)
        assert store.get_zone_token("notes") is None
        store.close_connection()

    def test_requeue_failed(self, cli_env, capsys):
        store = open_store(cli_env)
        store.save_record("notes", "a", "Note")
        store.mark_pending_failed("notes", "a", "permission_failure")
        store.close_connection()

        assert run(cli_env, "requeue-failed") == 0
        assert "Requeued 1" in capsys.readouterr().out

    def test_watch_runs_requested_cycles(self, cli_env, capsys):
        run(cli_env, "create-zone", "notes")
        assert run(cli_env, "watch", "--interval", "0", "--max-cycles", "1") == 0
        assert "Completed 1 cycle(s)" in capsys.readouterr().out
        assert cli_env["server"].zone_names() == ["notes"]
