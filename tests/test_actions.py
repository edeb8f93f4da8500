"""Tests for action resolution and execution."""

import json
import shlex
import sys

import pytest

from backup_sentinel.actions import (
    ActionChain,
    ActionFileCache,
    ActionFileResolver,
    ActionRunner,
    DefaultActionResolver,
    NotificationActionResolver,
    load_action_file,
    render_command,
)
from backup_sentinel.config import SentinelConfig
from backup_sentinel.exceptions import ActionUnresolvedError
from backup_sentinel.models import EventKind, Notification

PYTHON = shlex.quote(sys.executable)


def write_actions(path, **actions):
    path.write_text(json.dumps(actions), encoding="utf-8")
    return path


def make(kind, path="/data/a.txt", old_path="", action_ref=None):
    return Notification(occurred_at=1.0, kind=kind, path=path, old_path=old_path, action_ref=action_ref, id=1)


class TestRenderCommand:
    """Tests for render_command."""

    def test_substitutes_fullfile(self):
        command = render_command("cp %fullfile% /backup/", make(EventKind.CREATE, "/data/a.txt"))
        assert command == "cp /data/a.txt /backup/"

    def test_quotes_paths_with_spaces(self):
        command = render_command("cp %fullfile% /backup/", make(EventKind.CREATE, "/data/my report.txt"))
        assert command == "cp '/data/my report.txt' /backup/"
        assert shlex.split(command) == ["cp", "/data/my report.txt", "/backup/"]

    def test_appends_fullfile_when_missing(self):
        command = render_command("sync.sh --now", make(EventKind.MODIFY, "/data/a.txt"))
        assert command == "sync.sh --now fullfile /data/a.txt"

    def test_substitutes_old_path_for_move(self):
        n = make(EventKind.MOVE, "/data/b/x.txt", old_path="/data/a/x.txt")
        command = render_command("mv %oldfullfile% %fullfile%", n)
        assert command == "mv /data/a/x.txt /data/b/x.txt"

    def test_substitutes_old_path_for_rename(self):
        n = make(EventKind.RENAME, "/data/new.txt", old_path="/data/old.txt")
        assert render_command("mv %oldfullfile% %fullfile%", n) == "mv /data/old.txt /data/new.txt"

    def test_old_path_empty_for_other_kinds(self):
        n = make(EventKind.CREATE, "/data/x.txt", old_path="/stale/x.txt")
        assert render_command("echo %oldfullfile% %fullfile%", n) == "echo '' /data/x.txt"

    def test_paths_containing_placeholders_are_not_rescanned(self):
        n = make(EventKind.MOVE, "/data/new.txt", old_path="/data/%fullfile%.txt")
        command = render_command("mv %oldfullfile% %fullfile%", n)
        assert command == "mv /data/%fullfile%.txt /data/new.txt"

    def test_fullfile_in_old_path_still_appends(self):
        n = make(EventKind.MOVE, "/data/new.txt", old_path="/data/%fullfile%")
        command = render_command("echo %oldfullfile%", n)
        assert command == "echo /data/%fullfile% fullfile /data/new.txt"


class TestLoadActionFile:
    """Tests for load_action_file."""

    def test_load(self, tmp_path):
        path = write_actions(
            tmp_path / "actions.json",
            add_cmd="add %fullfile%",
            modify_cmd="modify %fullfile%",
            rename_cmd="",
            move_cmd="move %oldfullfile% %fullfile%",
        )

        actions = load_action_file(path)

        assert actions == {
            EventKind.CREATE: "add %fullfile%",
            EventKind.MODIFY: "modify %fullfile%",
            EventKind.MOVE: "move %oldfullfile% %fullfile%",
        }

    def test_missing_file(self, tmp_path):
        with pytest.raises(ActionUnresolvedError):
            load_action_file(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "actions.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ActionUnresolvedError):
            load_action_file(path)

    def test_non_utf8_file(self, tmp_path):
        path = tmp_path / "actions.json"
        path.write_bytes('{"add_cmd": "echo 备份 %fullfile%"}'.encode("gbk"))
        with pytest.raises(ActionUnresolvedError):
            load_action_file(path)

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "actions.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(ActionUnresolvedError):
            load_action_file(path)


class TestActionFileCache:
    """Tests for ActionFileCache class."""

    def test_caches_until_ttl(self, tmp_path):
        now = [100.0]
        cache = ActionFileCache(ttl=10.0, clock=lambda: now[0])
        path = write_actions(tmp_path / "actions.json", add_cmd="first")

        assert cache.get(str(path)) == {EventKind.CREATE: "first"}

        write_actions(path, add_cmd="second")
        now[0] = 105.0
        assert cache.get(str(path)) == {EventKind.CREATE: "first"}

        now[0] = 111.0
        assert cache.get(str(path)) == {EventKind.CREATE: "second"}

    def test_purge_expired(self, tmp_path):
        now = [0.0]
        cache = ActionFileCache(ttl=10.0, clock=lambda: now[0])
        a = write_actions(tmp_path / "a.json", add_cmd="a")
        b = write_actions(tmp_path / "b.json", add_cmd="b")

        cache.get(str(a))
        now[0] = 5.0
        cache.get(str(b))
        assert len(cache) == 2

        now[0] = 12.0
        assert cache.purge_expired() == 1
        assert len(cache) == 1

    def test_unreadable_file_not_cached(self, tmp_path):
        cache = ActionFileCache()
        with pytest.raises(ActionUnresolvedError):
            cache.get(str(tmp_path / "missing.json"))
        assert len(cache) == 0


class TestActionChain:
    """Tests for ActionChain and resolvers."""

    @pytest.fixture
    def chain(self, tmp_path):
        ref = write_actions(tmp_path / "ref.json", modify_cmd="ref-modify %fullfile%")
        process = write_actions(
            tmp_path / "process.json",
            add_cmd="process-add %fullfile%",
            delete_cmd="process-delete %fullfile%",
            move_cmd="process-move %oldfullfile% %fullfile%",
        )
        config = SentinelConfig(action_file=process, default_action="default %fullfile%")
        return ActionChain.from_config(config), str(ref)

    def test_notification_action_file_wins(self, chain):
        chain, ref = chain
        assert chain.resolve(make(EventKind.MODIFY, action_ref=ref)) == "ref-modify %fullfile%"

    def test_falls_through_to_process_action_file(self, chain):
        chain, ref = chain
        assert chain.resolve(make(EventKind.CREATE, action_ref=ref)) == "process-add %fullfile%"
        assert chain.resolve(make(EventKind.DELETE)) == "process-delete %fullfile%"

    def test_falls_through_to_default(self, chain):
        chain, _ = chain
        assert chain.resolve(make(EventKind.MODIFY)) == "default %fullfile%"

    def test_rename_uses_move_action(self, chain):
        chain, _ = chain
        assert chain.resolve(make(EventKind.RENAME)) == "process-move %oldfullfile% %fullfile%"

    def test_rename_action_preferred_over_move(self, tmp_path):
        path = write_actions(tmp_path / "actions.json", rename_cmd="rename", move_cmd="move")
        resolver = ActionFileResolver(path)
        assert resolver.resolve(make(EventKind.RENAME)) == "rename"
        assert resolver.resolve(make(EventKind.MOVE)) == "move"

    def test_unresolved(self):
        chain = ActionChain([DefaultActionResolver(None)])
        with pytest.raises(ActionUnresolvedError):
            chain.resolve(make(EventKind.CREATE))

    def test_missing_notification_action_file(self):
        chain = ActionChain([NotificationActionResolver(), DefaultActionResolver("echo")])
        with pytest.raises(ActionUnresolvedError):
            chain.resolve(make(EventKind.CREATE, action_ref="/nonexistent/actions.json"))

    def test_bad_process_action_file_fails_fast(self, tmp_path):
        config = SentinelConfig(action_file=tmp_path / "missing.json")
        with pytest.raises(ActionUnresolvedError):
            ActionChain.from_config(config)


class TestActionRunner:
    """Tests for ActionRunner class."""

    def test_success_captures_output(self):
        result = ActionRunner().run(f'{PYTHON} -c "print(\'backed up\')"')
        assert result.success
        assert result.returncode == 0
        assert "backed up" in result.output

    def test_captures_stderr(self):
        result = ActionRunner().run(f'{PYTHON} -c "import sys; sys.stderr.write(\'oops\')"')
        assert "oops" in result.output

    def test_non_utf8_output_is_replaced(self):
        result = ActionRunner().run(f'{PYTHON} -c "import sys; sys.stdout.buffer.write(bytes([255, 254]) + b\'ok\')"')
        assert result.success
        assert "ok" in result.output
        assert "\ufffd" in result.output

    def test_nonzero_exit(self):
        result = ActionRunner().run(f'{PYTHON} -c "import sys; sys.exit(3)"')
        assert not result.success
        assert result.returncode == 3

    def test_missing_program(self):
        result = ActionRunner().run("definitely-not-a-real-program-xyz --flag")
        assert not result.success
        assert result.returncode is None

    def test_timeout(self):
        result = ActionRunner(timeout=0.2).run(f'{PYTHON} -c "import time; time.sleep(5)"')
        assert not result.success
        assert result.returncode is None

    def test_empty_command(self):
        assert ActionRunner().run("   ").returncode is None

    def test_unbalanced_quotes(self):
        assert ActionRunner().run("echo 'unterminated").returncode is None
