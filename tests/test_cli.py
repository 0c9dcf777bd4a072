"""Tests for the encrypted-attribute command line tool."""

from __future__ import annotations

import json

import pytest

from encrypted_attributes import cli
from encrypted_attributes.envelope import Envelope

ATTRIBUTE = "mysql.server_root_password"


@pytest.fixture
def workspace(monkeypatch, tmp_path, directory, k1, k3):
    """Nodes directory, key directory and keys in a temporary working directory."""
    monkeypatch.chdir(tmp_path)
    for name in ("VERSION", "CLIENT_SEARCH", "NODE_SEARCH", "USERS", "KEYS", "CLIENT_KEY"):
        monkeypatch.delenv(f"ENCRYPTED_ATTRIBUTES_{name}", raising=False)

    (tmp_path / "directory.json").write_text(json.dumps(directory.to_dict()))
    (tmp_path / "admin1.pem").write_text(k1.to_pem())
    (tmp_path / "alice.pem").write_text(k3.to_pem())
    (tmp_path / "alice.pub").write_text(k3.public_key.to_pem())
    (tmp_path / "nodes").mkdir()
    return tmp_path


def run(*args, key="admin1.pem"):
    return cli.main(
        ["--nodes-dir", "nodes", "--directory", "directory.json", "--key", key, "-C", "admin:true"]
        + list(args)
    )


def stored(workspace):
    return json.loads((workspace / "nodes" / "web1.json").read_text())


class TestCreateAndShow:
    def test_plain_value(self, workspace, capsys, k1, k2):
        assert run("create", "web1", ATTRIBUTE, "--value", "s3cr3t") == 0
        assert "Encrypted attribute created." in capsys.readouterr().out

        enc_value = stored(workspace)["mysql"]["server_root_password"]
        assert Envelope.from_dict(enc_value).recipients() == {k1.fingerprint, k2.fingerprint}

        assert run("show", "web1", ATTRIBUTE) == 0
        assert capsys.readouterr().out.strip() == '"s3cr3t"'

    def test_json_value(self, workspace, capsys):
        assert run("create", "web1", ATTRIBUTE, "-i", "json", "--value", '{"a": [1, 2]}') == 0
        capsys.readouterr()
        assert run("show", "web1", ATTRIBUTE) == 0
        assert json.loads(capsys.readouterr().out) == {"a": [1, 2]}

    def test_invalid_json_value(self, workspace, capsys):
        assert run("create", "web1", ATTRIBUTE, "-i", "json", "--value", "{nope") == 1
        assert "Invalid JSON input" in capsys.readouterr().err

    def test_encrypted_version(self, workspace):
        assert run("--encrypted-version", "0", "create", "web1", ATTRIBUTE, "--value", "v") == 0
        assert stored(workspace)["mysql"]["server_root_password"]["version"] == 0

    def test_create_with_editor(self, workspace, monkeypatch, capsys):
        monkeypatch.setattr(cli, "run_editor", lambda text: "from editor\n")
        assert run("create", "web1", ATTRIBUTE) == 0
        capsys.readouterr()
        run("show", "web1", ATTRIBUTE)
        assert capsys.readouterr().out.strip() == '"from editor"'

    def test_create_with_missing_editor(self, workspace, monkeypatch, capsys):
        monkeypatch.delenv("VISUAL", raising=False)
        monkeypatch.setenv("EDITOR", str(workspace / "no-such-editor"))
        assert run("create", "web1", ATTRIBUTE) == 1
        assert "Cannot run editor" in capsys.readouterr().err
        assert not (workspace / "nodes" / "web1.json").exists()

    def test_already_exists(self, workspace, capsys):
        run("create", "web1", ATTRIBUTE, "--value", "v")
        assert run("create", "web1", ATTRIBUTE, "--value", "w") == 1
        assert "already exists" in capsys.readouterr().err

    def test_show_missing(self, workspace, capsys):
        assert run("show", "web1", ATTRIBUTE) == 1
        assert "Encrypted attribute not found" in capsys.readouterr().err

    def test_show_not_a_reader(self, workspace, capsys):
        run("create", "web1", ATTRIBUTE, "--value", "v")
        capsys.readouterr()
        assert run("show", "web1", ATTRIBUTE, key="alice.pem") == 1
        assert "Invalid encrypted attribute" in capsys.readouterr().err

    def test_unknown_node(self, workspace, capsys):
        assert run("create", "ghost", ATTRIBUTE, "--value", "v") == 1
        assert "Client not found" in capsys.readouterr().err

    def test_invalid_node_name(self, workspace, capsys):
        assert run("show", "../web1", ATTRIBUTE) == 1
        assert "Invalid argument" in capsys.readouterr().err

    def test_missing_directory(self, workspace, capsys):
        (workspace / "directory.json").unlink()
        assert run("show", "web1", ATTRIBUTE) == 1
        assert "Configuration error" in capsys.readouterr().err


class TestUpdate:
    def test_not_needed(self, workspace, capsys):
        run("create", "web1", ATTRIBUTE, "--value", "v")
        assert run("update", "web1", ATTRIBUTE) == 0
        assert "Encrypted attribute does not need updating." in capsys.readouterr().out

    def test_updated(self, workspace, capsys, k3):
        run("create", "web1", ATTRIBUTE, "--value", "v")
        assert run("-P", "alice.pub", "update", "web1", ATTRIBUTE) == 0
        assert "Encrypted attribute updated." in capsys.readouterr().out
        assert run("show", "web1", ATTRIBUTE, key="alice.pem") == 0

    def test_users_option(self, workspace, capsys):
        run("create", "web1", ATTRIBUTE, "--value", "v")
        assert run("-U", "alice", "update", "web1", ATTRIBUTE) == 0
        assert "Encrypted attribute updated." in capsys.readouterr().out

    def test_missing(self, workspace, capsys):
        assert run("update", "web1", ATTRIBUTE) == 1
        assert "Encrypted attribute not found" in capsys.readouterr().err

    def test_tampered(self, workspace, capsys, k2):
        run("-P", "alice.pub", "create", "web1", ATTRIBUTE, "--value", "v")
        document = stored(workspace)
        enc_value = document["mysql"]["server_root_password"]
        enc_value["encrypted_secret"].pop(k2.fingerprint)
        (workspace / "nodes" / "web1.json").write_text(json.dumps(document))
        capsys.readouterr()
        assert run("update", "web1", ATTRIBUTE) == 1
        assert "integrity check failed" in capsys.readouterr().err


class TestEdit:
    def test_edit(self, workspace, monkeypatch, capsys):
        run("create", "web1", ATTRIBUTE, "--value", "old")
        seen = []

        def editor(text):
            seen.append(text)
            return "new\n"

        monkeypatch.setattr(cli, "run_editor", editor)
        assert run("edit", "web1", ATTRIBUTE) == 0
        assert seen == ["old"]
        capsys.readouterr()
        run("show", "web1", ATTRIBUTE)
        assert capsys.readouterr().out.strip() == '"new"'

    def test_edit_json(self, workspace, monkeypatch, capsys):
        run("create", "web1", ATTRIBUTE, "-i", "json", "--value", '{"a": 1}')
        monkeypatch.setattr(cli, "run_editor", lambda text: text.replace("1", "2"))
        assert run("edit", "web1", ATTRIBUTE, "-i", "json") == 0
        capsys.readouterr()
        run("show", "web1", ATTRIBUTE)
        assert json.loads(capsys.readouterr().out) == {"a": 2}

    def test_edit_missing(self, workspace, capsys):
        assert run("edit", "web1", ATTRIBUTE) == 1
        assert "Encrypted attribute not found" in capsys.readouterr().err


class TestDelete:
    def test_delete(self, workspace, capsys):
        run("create", "web1", ATTRIBUTE, "--value", "v")
        assert run("delete", "web1", ATTRIBUTE) == 0
        assert "Encrypted attribute deleted." in capsys.readouterr().out
        assert stored(workspace) == {"mysql": {}}

    def test_delete_unreadable_requires_force(self, workspace, capsys):
        run("create", "web1", ATTRIBUTE, "--value", "v")
        assert run("delete", "web1", ATTRIBUTE, key="alice.pem") == 1
        assert "server_root_password" in stored(workspace)["mysql"]
        assert run("delete", "web1", ATTRIBUTE, "--force", key="alice.pem") == 0
        assert stored(workspace) == {"mysql": {}}


class TestEditorHelpers:
    def test_format_and_parse_plain(self):
        assert cli.format_value("text", "plain") == "text"
        assert cli.format_value({"a": 1}, "plain") == '{"a": 1}'
        assert cli.parse_value("text\n\n", "plain") == "text"

    def test_format_and_parse_json(self):
        text = cli.format_value({"b": 1, "a": [True]}, "json")
        assert cli.parse_value(text, "json") == {"a": [True], "b": 1}
        with pytest.raises(cli.CommandError):
            cli.parse_value("[", "json")

    def test_run_editor(self, monkeypatch, tmp_path):
        script = tmp_path / "editor.sh"
        script.write_text('#!/bin/sh\necho "edited" > "$1"\n')
        script.chmod(0o755)
        monkeypatch.delenv("VISUAL", raising=False)
        monkeypatch.setenv("EDITOR", str(script))
        assert cli.run_editor("original") == "edited\n"

    def test_failing_editor(self, monkeypatch):
        monkeypatch.delenv("VISUAL", raising=False)
        monkeypatch.setenv("EDITOR", "false")
        with pytest.raises(cli.CommandError):
            cli.run_editor("original")

    def test_missing_editor(self, monkeypatch, tmp_path):
        monkeypatch.delenv("VISUAL", raising=False)
        monkeypatch.setenv("EDITOR", str(tmp_path / "no-such-editor"))
        with pytest.raises(cli.CommandError, match="Cannot run editor"):
            cli.run_editor("original")


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])
