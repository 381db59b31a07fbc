"""
CLI tests.

Each test drives main() against a throwaway SQLite file.
"""

import json
import os

import pytest

from balancechain.cli import build_parser, main


@pytest.fixture
def db(tmp_dir):
    return os.path.join(tmp_dir, "node.db")


def _run(capsys, db, *argv):
    code = main(["--db", db, *argv])
    return code, capsys.readouterr()


def _whoami(capsys, db):
    code, out = _run(capsys, db, "whoami", "--output", "json")
    assert code == 0
    return json.loads(out.out)


class TestParser:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_run_options_repeatable(self):
        args = build_parser().parse_args(
            ["run", "--signal", "ws://a", "--signal", "ws://b", "--peer", "HID-x", "--duration", "1"]
        )
        assert args.signal == ["ws://a", "ws://b"]
        assert args.peer == ["HID-x"]
        assert args.duration == 1.0


class TestIdentity:
    def test_init_is_stable(self, capsys, db):
        code, first = _run(capsys, db, "init", "--hik", "HIK-alice")
        assert code == 0
        assert "HIK: HIK-alice" in first.out

        _, second = _run(capsys, db, "init")
        hid_line = [line for line in first.out.splitlines() if line.startswith("HID:")]
        assert hid_line and hid_line[0] in second.out

    def test_whoami_json(self, capsys, db):
        _run(capsys, db, "init", "--hik", "HIK-alice")
        info = _whoami(capsys, db)
        assert info["hik"] == "HIK-alice"
        assert info["hid"].startswith("HID-")
        assert info["length"] == 0


class TestChainCommands:
    def test_chat_and_log(self, capsys, db):
        code, out = _run(capsys, db, "chat", "first note")
        assert code == 0
        assert out.out.startswith("ok  seq=1")

        _run(capsys, db, "chat", "second note")
        code, out = _run(capsys, db, "log", "--output", "json")
        assert code == 0
        entries = json.loads(out.out)
        assert [e["seq"] for e in entries] == [1, 2]
        assert [e["type"] for e in entries] == ["chat.append", "chat.append"]
        assert entries[1]["prev_hash"] != entries[0]["prev_hash"]

    def test_log_limit_and_table(self, capsys, db):
        for i in range(3):
            _run(capsys, db, "chat", f"n{i}")
        code, out = _run(capsys, db, "log", "--limit", "1")
        assert code == 0
        assert "chat.append" in out.out
        assert out.out.count("chat.append") == 1

    def test_empty_log(self, capsys, db):
        _, out = _run(capsys, db, "log")
        assert "Chain is empty." in out.out

    def test_send_queues_message(self, capsys, db):
        code, out = _run(capsys, db, "send", "HID-peer", "hello")
        assert code == 0
        assert "queued msgId=" in out.out
        assert "seq=1" in out.out

        _, out = _run(capsys, db, "messages", "--peer", "HID-peer", "--output", "json")
        rows = json.loads(out.out)
        assert [(r["dir"], r["text"]) for r in rows] == [("out", "hello")]
        assert _whoami(capsys, db)["length"] == 2

    def test_contact_add(self, capsys, db):
        code, _ = _run(capsys, db, "contact-add", "HID-bob", "--nickname", "bob")
        assert code == 0
        _, out = _run(capsys, db, "export")
        data = json.loads(out.out)
        assert data["contacts"][0]["nickname"] == "bob"

    def test_verify_ok(self, capsys, db):
        _run(capsys, db, "chat", "hi")
        code, out = _run(capsys, db, "verify", "--output", "json")
        assert code == 0
        report = json.loads(out.out)
        assert report["ok"] is True
        assert report["length"] == 1


class TestExportReset:
    def test_export_hides_keys_by_default(self, capsys, db, tmp_dir):
        _run(capsys, db, "chat", "hi")
        target = os.path.join(tmp_dir, "dump.json")
        code, out = _run(capsys, db, "export", "--file", target)
        assert code == 0
        assert "Exported to" in out.out
        with open(target, encoding="utf-8") as f:
            data = json.load(f)
        assert "keys" not in data
        assert len(data["state_chain"]) == 1

        _, out = _run(capsys, db, "export", "--include-keys")
        assert "keys" in json.loads(out.out)

    def test_reset_requires_confirmation(self, capsys, db):
        _run(capsys, db, "chat", "keep me")
        code, out = _run(capsys, db, "reset")
        assert code == 1
        assert "--yes" in out.err
        assert _whoami(capsys, db)["length"] == 1

    def test_reset_wipes(self, capsys, db):
        _run(capsys, db, "chat", "bye")
        code, _ = _run(capsys, db, "reset", "--yes")
        assert code == 0
        assert _whoami(capsys, db)["length"] == 0
