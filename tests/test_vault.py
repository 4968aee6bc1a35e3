"""Tests for the secrets store and redaction."""
import logging
import os
import shutil
import stat
import subprocess

import pytest

from hostwright.errors import SecretError
from hostwright.vault import REDACTED, RedactingFilter, SecretResolver, Secrets

needs_openssl = pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl not installed")

PASSPHRASE = "correct horse battery staple"


@pytest.fixture
def store(tmp_path):
    """An encrypted store holding two secrets."""
    path = tmp_path / "secrets.enc"
    SecretResolver().encrypt(
        {"serveradmin_password": "s3cr3t-Admin!", "query": {"token": "tok-42"}},
        PASSPHRASE,
        path,
    )
    return path


class TestSecrets:
    """Tests for the in-memory Secrets mapping."""

    def test_mapping_behaviour(self):
        """Secrets reads like a dict but hides values in repr."""
        secrets = Secrets({"a": "one", "b": "two"})

        assert secrets["a"] == "one"
        assert sorted(secrets) == ["a", "b"]
        assert len(secrets) == 2
        assert "one" not in repr(secrets)

    def test_redact_nested_and_longest_first(self):
        """Nested values are masked; longer values win over their prefixes."""
        secrets = Secrets({"short": "abc", "long": "abcdef", "nested": {"k": ["xyz"]}})

        assert secrets.redact("abcdef abc xyz") == f"{REDACTED} {REDACTED} {REDACTED}"

    def test_redact_ignores_booleans_and_empty(self):
        """Booleans and empty strings are not treated as secret text."""
        secrets = Secrets({"flag": True, "empty": "", "none": None})

        assert secrets.redact("True is fine") == "True is fine"

    def test_wipe(self):
        """After wipe no plaintext remains reachable."""
        secrets = Secrets({"a": "one"})

        secrets.wipe()

        assert len(secrets) == 0
        assert secrets.plaintexts() == []


class TestRedactingFilter:
    """Tests for log redaction."""

    def test_filter_masks_message_args(self):
        """Formatted messages are masked, including %-style args."""
        secrets = Secrets({"pw": "hunter2"})
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "password is %s", ("hunter2",), None)

        RedactingFilter(secrets).filter(record)

        assert record.getMessage() == f"password is {REDACTED}"

    def test_redacting_context_on_caplog(self, caplog):
        """While redacting, nothing logged through hostwright shows the secret."""
        secrets = Secrets({"pw": "hunter2"})
        log = logging.getLogger("hostwright.test")

        with caplog.at_level(logging.INFO):
            with secrets.redacting():
                log.info("connecting with hunter2")
            log.info("after hunter2")

        assert "hunter2" not in caplog.records[0].getMessage()
        # Filter is removed once the run is over
        assert "hunter2" in caplog.records[1].getMessage()


@needs_openssl
class TestSecretResolver:
    """Tests for SecretResolver against the real openssl binary."""

    def test_round_trip(self, store):
        """Encrypted values decrypt back to the same mapping."""
        secrets = SecretResolver().resolve(store, PASSPHRASE)

        assert secrets["serveradmin_password"] == "s3cr3t-Admin!"
        assert secrets["query"]["token"] == "tok-42"

    def test_store_is_private_and_opaque(self, store):
        """The store is mode 0600 and holds no plaintext."""
        assert stat.S_IMODE(os.stat(store).st_mode) == 0o600
        assert b"s3cr3t-Admin!" not in store.read_bytes()

    def test_wrong_passphrase(self, store):
        """Wrong passphrase is a SecretError without plaintext in the message."""
        with pytest.raises(SecretError) as exc:
            SecretResolver().resolve(store, "wrong")

        assert "s3cr3t" not in str(exc.value)
        assert exc.value.exit_code == 8

    def test_passphrase_never_on_argv(self, store, monkeypatch):
        """The passphrase reaches openssl through a pipe, not the command line."""
        seen = []
        real_run = subprocess.run

        def recording_run(argv, *args, **kwargs):
            seen.append(list(argv))
            return real_run(argv, *args, **kwargs)

        monkeypatch.setattr(subprocess, "run", recording_run)
        SecretResolver().resolve(store, PASSPHRASE)

        assert seen
        assert all(PASSPHRASE not in arg for argv in seen for arg in argv)

    def test_non_mapping_store(self, tmp_path):
        """A store that decrypts to a list is rejected."""
        path = tmp_path / "list.enc"
        SecretResolver().encrypt(["a", "b"], PASSPHRASE, path)

        with pytest.raises(SecretError) as exc:
            SecretResolver().resolve(path, PASSPHRASE)

        assert "mapping" in str(exc.value)

    def test_corrupt_store(self, tmp_path):
        """Garbage that is not an openssl blob fails cleanly."""
        path = tmp_path / "garbage.enc"
        path.write_bytes(b"not encrypted at all")

        with pytest.raises(SecretError):
            SecretResolver().resolve(path, PASSPHRASE)


class TestSecretResolverErrors:
    """Failures that never reach openssl."""

    def test_missing_store(self, tmp_path):
        """A missing store is a SecretError."""
        with pytest.raises(SecretError) as exc:
            SecretResolver().resolve(tmp_path / "nope.enc", PASSPHRASE)

        assert "not found" in str(exc.value)

    def test_empty_passphrase(self, tmp_path):
        """An empty passphrase is refused up front."""
        path = tmp_path / "s.enc"
        path.write_bytes(b"x")

        with pytest.raises(SecretError):
            SecretResolver().resolve(path, "")

    def test_missing_openssl(self, tmp_path):
        """A missing openssl binary is a SecretError."""
        path = tmp_path / "s.enc"
        path.write_bytes(b"x")

        with pytest.raises(SecretError) as exc:
            SecretResolver(openssl="/nonexistent/openssl").resolve(path, PASSPHRASE)

        assert "not installed" in str(exc.value)
