"""Tests for Directory Monitor payload parsing."""

import json
from datetime import datetime

import pytest

from backup_sentinel.exceptions import IntegrityError, PayloadError
from backup_sentinel.models import EventKind
from backup_sentinel.payload import join_arguments, parse_arguments, parse_payload


def payload(**fields):
    data = {"t": "2025/11/3 16:43:40", "e": "新增", "d": "/volume1/share", "f": "/volume1/share/a.txt"}
    data.update(fields)
    return json.dumps(data, ensure_ascii=False)


class TestJoinArguments:
    """Tests for join_arguments."""

    def test_rejoins_split_paths(self):
        args = ['{"t":"2025/11/3', '16:43:40",', '"e":"修改",', '"f":"/data/my', 'file.txt"}']
        raw = join_arguments(args)
        assert json.loads(raw)["f"] == "/data/my file.txt"

    def test_escapes_backslashes(self):
        raw = join_arguments(['{"f":"D:\\share\\a.txt"}'])
        assert json.loads(raw)["f"] == "D:\\share\\a.txt"

    def test_repairs_empty_old_path(self):
        raw = join_arguments(['{"f":"/a.txt",', '"of":"""}'])
        assert json.loads(raw)["of"] == ""


class TestParsePayload:
    """Tests for parse_payload."""

    def test_parse_full_payload(self):
        n = parse_payload(payload(
            e="重命名",
            f="/volume1/share/new.txt",
            of="/volume1/share/old.txt",
            s="1024",
            cmd_file="/etc/sentinel/actions.json",
        ))

        assert n.kind == EventKind.RENAME
        assert n.raw_kind == "重命名"
        assert n.occurred_at == datetime(2025, 11, 3, 16, 43, 40).timestamp()
        assert n.directory == "/volume1/share"
        assert n.path == "/volume1/share/new.txt"
        assert n.old_path == "/volume1/share/old.txt"
        assert n.size == 1024
        assert n.action_ref == "/etc/sentinel/actions.json"
        assert n.id is None

    @pytest.mark.parametrize("token,kind", [
        ("新增", EventKind.CREATE),
        ("修改", EventKind.MODIFY),
        ("重命名", EventKind.RENAME),
        ("删除", EventKind.DELETE),
        ("MOVE", EventKind.MOVE),
        ("deleted", EventKind.DELETE),
    ])
    def test_event_vocabulary(self, token, kind):
        assert parse_payload(payload(e=token)).kind == kind

    def test_defaults_for_optional_fields(self):
        n = parse_payload(payload())
        assert n.old_path == ""
        assert n.size == 0
        assert n.action_ref is None

    def test_invalid_size_is_unknown(self):
        assert parse_payload(payload(s="big")).size == 0
        assert parse_payload(payload(s=-5)).size == 0

    @pytest.mark.parametrize("raw", [
        "",
        "   ",
        "not json",
        "[1, 2, 3]",
        payload(t="yesterday"),
        payload(e="啥"),
        payload(f=""),
    ])
    def test_rejects_invalid(self, raw):
        with pytest.raises(PayloadError):
            parse_payload(raw)

    def test_payload_error_is_integrity_error(self):
        with pytest.raises(IntegrityError):
            parse_payload("not json")


class TestParseArguments:
    """Tests for parse_arguments."""

    def test_missing_arguments(self):
        with pytest.raises(PayloadError):
            parse_arguments([])

    def test_parses_arguments(self):
        n = parse_arguments([payload(e="删除", f="/volume1/share/gone.txt")])
        assert n.kind == EventKind.DELETE
        assert n.path == "/volume1/share/gone.txt"

    def test_skip_patterns(self):
        args = [payload(f="/volume1/share/@eaDir/a.txt@SynoEAStream")]
        assert parse_arguments(args, ["@eaDir"]) is None

    def test_skip_patterns_do_not_hide_errors_elsewhere(self):
        with pytest.raises(PayloadError):
            parse_arguments(["not json"], ["@eaDir"])
