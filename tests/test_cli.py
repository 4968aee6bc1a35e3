"""Tests for the hostwright command line."""
import io
import json
import logging
import shutil
import sys
import textwrap

import pytest

from hostwright import cli
from hostwright.config import PASSPHRASE_ENV
from hostwright.engine import ProvisionEngine

needs_openssl = pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl not installed")

PLAYBOOK = """\
name: voice
connection: local
vars:
  motd: Welcome
tasks:
  - name: Install git
    package: {name: git}
  - name: Message of the day
    file: {path: /etc/motd, content: "{{ motd }}\\n"}
    notify: announce
handlers:
  - name: announce
    command: [wall, motd changed]
"""


@pytest.fixture
def cli_env(tmp_path, monkeypatch, host):
    """Isolated settings, log and audit paths; the fake host stands in for localhost."""
    monkeypatch.setenv("HOSTWRIGHT_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("HOSTWRIGHT_LOG_FILE", str(tmp_path / "logs" / "hostwright.log"))
    monkeypatch.setenv("HOSTWRIGHT_AUDIT_DIR", str(tmp_path / "audit"))
    monkeypatch.delenv(PASSPHRASE_ENV, raising=False)
    monkeypatch.setattr(sys, "stdin", io.StringIO())
    monkeypatch.setattr(cli, "create_host", lambda config: host)
    host.available["git"] = "1:2.34.1"
    yield tmp_path
    for name in ("hostwright", "hostwright.perf", "hostwright.audit"):
        lg = logging.getLogger(name)
        for handler in list(lg.handlers):
            lg.removeHandler(handler)
            handler.close()
        lg.propagate = True


def write(path, text):
    path.write_text(textwrap.dedent(text))
    return path


class TestPlanCommand:
    """hostwright plan"""

    def test_lists_tasks(self, cli_env, capsys):
        """plan prints the validated task list."""
        playbook = write(cli_env / "site.yaml", PLAYBOOK)

        assert cli.main(["plan", str(playbook)]) == 0

        out = capsys.readouterr().out
        assert "Playbook: voice (host localhost, local)" in out
        assert "  1. [package] Install git" in out
        assert "  handler [command] announce" in out

    def test_unknown_handler(self, cli_env):
        """Unknown notify targets exit with the plan error code."""
        playbook = write(cli_env / "bad.yaml", """\
            tasks:
              - command: "true"
                notify: nobody
        """)

        assert cli.main(["plan", str(playbook)]) == 4

    def test_misordered_rules(self, cli_env):
        """A REJECT shadowing a later ACCEPT exits with the rule order code."""
        playbook = write(cli_env / "fw.yaml", """\
            tasks:
              - firewall:
                  rules:
                    - {action: REJECT}
                    - {protocol: tcp, port: 22}
        """)

        assert cli.main(["plan", str(playbook)]) == 6

    def test_missing_playbook(self, cli_env):
        """A missing playbook is a plan error."""
        assert cli.main(["plan", str(cli_env / "nope.yaml")]) == 4

    def test_usage_error(self, cli_env):
        """Bad arguments exit 2."""
        with pytest.raises(SystemExit) as exc:
            cli.main(["run"])

        assert exc.value.code == 2


class TestRunCommand:
    """hostwright run"""

    def test_apply(self, cli_env, host, capsys):
        """A successful run exits 0 and reports JSON on request."""
        playbook = write(cli_env / "site.yaml", PLAYBOOK)

        assert cli.main(["run", str(playbook), "--json"]) == 0

        report = json.loads(capsys.readouterr().out)
        assert report["recap"] == {"ok": 0, "changed": 3, "failed": 0, "skipped": 0}
        assert [r["task"] for r in report["handlers"]] == ["announce"]
        assert host.files["/etc/motd"] == b"Welcome\n"
        assert host.commands_run("wall") == [["wall", "motd changed"]]

    def test_check(self, cli_env, host):
        """--check leaves the host alone."""
        playbook = write(cli_env / "site.yaml", PLAYBOOK)

        assert cli.main(["run", str(playbook), "--check"]) == 0

        assert host.packages == {}
        assert host.writes == []

    def test_task_failure(self, cli_env, host):
        """A failing task exits 5."""
        host.commands["broken"] = (1, "", "boom")
        playbook = write(cli_env / "fail.yaml", """\
            tasks:
              - command: broken
        """)

        assert cli.main(["run", str(playbook)]) == 5

    def test_history(self, cli_env, capsys):
        """Changes from a run show up in the audit history."""
        playbook = write(cli_env / "site.yaml", PLAYBOOK)
        cli.main(["run", str(playbook)])
        capsys.readouterr()

        assert cli.main(["history", "--task", "Install git"]) == 0

        out = capsys.readouterr().out
        assert "fake  changed  Install git" in out
        assert "Message of the day" not in out

    def test_no_audit(self, cli_env, monkeypatch):
        """HOSTWRIGHT_AUDIT=0 writes no audit log."""
        monkeypatch.setenv("HOSTWRIGHT_AUDIT", "0")
        playbook = write(cli_env / "site.yaml", PLAYBOOK)

        assert cli.main(["run", str(playbook)]) == 0
        assert not (cli_env / "audit" / "audit.log").exists()

    def test_secrets_without_passphrase(self, cli_env, host):
        """Secrets are needed but no passphrase is available: exit 8, nothing runs."""
        (cli_env / "secrets.enc").write_bytes(b"x")
        playbook = write(cli_env / "s.yaml", """\
            secrets_file: secrets.enc
            tasks:
              - template: {path: /etc/ts3.ini, template: "{{ secrets.admin }}"}
        """)

        assert cli.main(["run", str(playbook)]) == 8
        assert host.calls == []

    def test_interrupt(self, cli_env, monkeypatch):
        """An abort during the run exits 130."""
        def interrupted(self, *args, **kwargs):
            raise KeyboardInterrupt

        monkeypatch.setattr(ProvisionEngine, "run", interrupted)
        playbook = write(cli_env / "site.yaml", PLAYBOOK)

        assert cli.main(["run", str(playbook)]) == 130


@needs_openssl
class TestSecretsCommands:
    """hostwright secrets"""

    def test_encrypt_keys_and_run(self, cli_env, host, capsys):
        """Encrypt a store, list its keys and use it in a run."""
        plain = write(cli_env / "secrets.yaml", """\
            admin: s3cr3t
            query_token: tok
        """)
        passfile = cli_env / "pass"
        passfile.write_text("correct horse\n")
        store = cli_env / "secrets.enc"

        assert cli.main(["secrets", "encrypt", str(plain), str(store),
                         "--passphrase-file", str(passfile)]) == 0
        assert b"s3cr3t" not in store.read_bytes()

        assert cli.main(["secrets", "keys", str(store), "--passphrase-file", str(passfile)]) == 0
        assert capsys.readouterr().out.split() == ["admin", "query_token"]

        playbook = write(cli_env / "s.yaml", """\
            secrets_file: secrets.enc
            tasks:
              - template: {path: /etc/ts3.ini, template: "pw={{ secrets.admin }}"}
        """)
        assert cli.main(["run", str(playbook), "--passphrase-file", str(passfile)]) == 0
        assert host.files["/etc/ts3.ini"] == b"pw=s3cr3t"

    def test_wrong_passphrase(self, cli_env, monkeypatch, capsys):
        """The environment passphrase is used; a wrong one exits 8."""
        plain = write(cli_env / "secrets.yaml", "admin: s3cr3t\n")
        store = cli_env / "secrets.enc"
        monkeypatch.setenv(PASSPHRASE_ENV, "right")
        cli.main(["secrets", "encrypt", str(plain), str(store)])

        monkeypatch.setenv(PASSPHRASE_ENV, "wrong")

        assert cli.main(["secrets", "keys", str(store)]) == 8
        assert "s3cr3t" not in capsys.readouterr().out
