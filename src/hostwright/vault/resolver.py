"""Secret Resolver.

The secrets store is a YAML mapping encrypted with
``openssl enc -aes-256-cbc -pbkdf2 -salt``. The passphrase reaches openssl
through an inherited pipe, never argv, and decrypted values only ever live
in memory for the duration of one run.
"""
import logging
import os
import subprocess
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

import yaml

from ..errors import SecretError

logger = logging.getLogger(__name__)

REDACTED = "********"

OPENSSL_CIPHER_ARGS = ["-aes-256-cbc", "-pbkdf2", "-iter", "200000", "-md", "sha256"]


class Secrets(Mapping):
    """Resolved secret values for one run.

    Behaves as a read-only mapping for template rendering and knows how to
    mask its own values in arbitrary text.
    """

    def __init__(self, values: Optional[dict[str, Any]] = None):
        self._values: dict[str, Any] = dict(values or {})

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Secrets(keys={sorted(self._values)})"

    def plaintexts(self) -> list[str]:
        """Every leaf value as a string, longest first."""
        found: list[str] = []

        def walk(value: Any) -> None:
            if isinstance(value, Mapping):
                for item in value.values():
                    walk(item)
            elif isinstance(value, (list, tuple)):
                for item in value:
                    walk(item)
            elif value is not None and not isinstance(value, bool):
                text = str(value)
                if text:
                    found.append(text)

        walk(self._values)
        return sorted(set(found), key=len, reverse=True)

    def redact(self, text: str) -> str:
        """Replace every secret value occurring in text."""
        if not text or not self._values:
            return text
        for plaintext in self.plaintexts():
            text = text.replace(plaintext, REDACTED)
        return text

    def wipe(self) -> None:
        """Drop all plaintext references held by this object."""
        self._values.clear()

    @contextmanager
    def redacting(self, *loggers: logging.Logger):
        """Attach a RedactingFilter to every handler of the given loggers.

        Defaults to the root, ``hostwright`` and ``hostwright.perf`` loggers.
        """
        targets = loggers or (
            logging.getLogger(),
            logging.getLogger("hostwright"),
            logging.getLogger("hostwright.perf"),
        )
        log_filter = RedactingFilter(self)
        handlers = {id(h): h for lg in targets for h in lg.handlers}.values()
        for handler in handlers:
            handler.addFilter(log_filter)
        try:
            yield log_filter
        finally:
            for handler in handlers:
                handler.removeFilter(log_filter)


class RedactingFilter(logging.Filter):
    """Mask secret values in log records before any handler formats them."""

    def __init__(self, secrets: Secrets):
        super().__init__()
        self.secrets = secrets

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.secrets.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if record.exc_info:
            text = logging.Formatter().formatException(record.exc_info)
            record.exc_text = self.secrets.redact(text)
            record.exc_info = None
        return True


class SecretResolver:
    """Decrypt (and create) openssl-encrypted YAML secret stores."""

    def __init__(self, openssl: str = "openssl", timeout: float = 30):
        self.openssl = openssl
        self.timeout = timeout

    def resolve(self, store_path: str | Path, passphrase: str) -> Secrets:
        """Decrypt the store into memory.

        Raises:
            SecretError: Missing store, wrong passphrase, corrupt store or
                content that is not a mapping. Messages never include
                plaintext.
        """
        store_path = Path(store_path)
        if not store_path.is_file():
            raise SecretError(f"Secrets store not found: {store_path}")
        if not passphrase:
            raise SecretError("Empty passphrase for secrets store")

        stdout = self._openssl(
            ["enc", "-d", *OPENSSL_CIPHER_ARGS, "-in", str(store_path)],
            passphrase,
            action=f"decrypt {store_path}",
        )

        try:
            data = yaml.safe_load(stdout.decode("utf-8"))
        except (yaml.YAMLError, UnicodeDecodeError):
            # The YAML error text can quote plaintext; report the fact only
            raise SecretError(f"Secrets store {store_path} is corrupt (not valid YAML)") from None

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise SecretError(f"Secrets store {store_path} must contain a mapping")

        logger.info(f"Resolved {len(data)} secret(s) from {store_path}")
        return Secrets({str(k): v for k, v in data.items()})

    def encrypt(self, values: dict[str, Any], passphrase: str, store_path: str | Path) -> None:
        """Encrypt a mapping into a new store; plaintext goes over stdin only."""
        if not passphrase:
            raise SecretError("Empty passphrase for secrets store")
        store_path = Path(store_path)
        store_path.parent.mkdir(parents=True, exist_ok=True)
        plaintext = yaml.safe_dump(values, default_flow_style=False, sort_keys=True)
        self._openssl(
            ["enc", "-e", *OPENSSL_CIPHER_ARGS, "-salt", "-out", str(store_path)],
            passphrase,
            action=f"encrypt {store_path}",
            stdin=plaintext.encode("utf-8"),
        )
        os.chmod(store_path, 0o600)
        logger.info(f"Wrote {len(values)} secret(s) to {store_path}")

    def _openssl(
        self,
        args: list[str],
        passphrase: str,
        action: str,
        stdin: Optional[bytes] = None,
    ) -> bytes:
        read_fd, write_fd = os.pipe()
        try:
            os.write(write_fd, passphrase.encode("utf-8") + b"\n")
        finally:
            os.close(write_fd)

        argv = [self.openssl, *args, "-pass", f"fd:{read_fd}"]
        try:
            proc = subprocess.run(
                argv,
                input=stdin,
                capture_output=True,
                timeout=self.timeout,
                pass_fds=(read_fd,),
            )
        except FileNotFoundError:
            raise SecretError(f"Cannot {action}: {self.openssl} not installed") from None
        except subprocess.TimeoutExpired:
            raise SecretError(f"Cannot {action}: openssl timed out") from None
        finally:
            os.close(read_fd)

        if proc.returncode != 0:
            reason = "bad passphrase or corrupt store" if "-d" in args else "openssl failed"
            logger.debug(f"openssl exited {proc.returncode} during {action}")
            raise SecretError(f"Cannot {action}: {reason}")
        return proc.stdout
