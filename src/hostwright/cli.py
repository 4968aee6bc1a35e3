#!/usr/bin/env python3
"""hostwright command line.

Usage:
    hostwright run PLAYBOOK [--check] [--passphrase-file FILE] [-v]
    hostwright plan PLAYBOOK
    hostwright secrets encrypt INPUT OUTPUT [--passphrase-file FILE]
    hostwright secrets keys STORE [--passphrase-file FILE]
    hostwright history [--host HOST] [--task TASK] [--limit N]

Environment variables:
    HOSTWRIGHT_SECRETS_PASSPHRASE   Passphrase for the secrets store
    HOSTWRIGHT_LOG_LEVEL            Console log level (default: INFO)
"""
import argparse
import getpass
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml

from . import __version__
from .config import PASSPHRASE_ENV, Settings, load_playbook
from .engine import ProvisionEngine, RunOptions, RunReport
from .errors import HostwrightError, SecretError
from .hosts import create_host
from .utils import get_recent_changes, setup_audit_logging, setup_logging
from .vault import SecretResolver

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


def read_passphrase(passphrase_file: Optional[Path], confirm: bool = False) -> str:
    """Passphrase from a file, the environment, or an interactive prompt.

    Raises:
        SecretError: If no passphrase can be obtained
    """
    if passphrase_file is not None:
        try:
            passphrase = passphrase_file.read_text(encoding="utf-8").splitlines()[0]
        except (OSError, IndexError):
            raise SecretError(f"Cannot read passphrase from {passphrase_file}") from None
        if not passphrase:
            raise SecretError(f"Passphrase file {passphrase_file} is empty")
        return passphrase

    passphrase = os.environ.get(PASSPHRASE_ENV)
    if passphrase:
        return passphrase

    if not sys.stdin.isatty():
        raise SecretError(
            f"No passphrase: use --passphrase-file or set {PASSPHRASE_ENV}"
        )
    passphrase = getpass.getpass("Secrets passphrase: ")
    if confirm and getpass.getpass("Confirm passphrase: ") != passphrase:
        raise SecretError("Passphrases do not match")
    return passphrase


def log_report(report: RunReport) -> None:
    """Per-task summary lines and the recap."""
    logger.info("")
    logger.info("=" * 60)
    logger.info("CHECK MODE RECAP" if report.check_mode else "RECAP")
    logger.info("=" * 60)
    for label, results in (("task", report.results), ("handler", report.handler_results)):
        for result in results:
            status = result.status.value
            if result.ignored:
                status += ", ignored"
            logger.info(f"  {label:7s} {status:14s} {result.task}")
            if result.error:
                logger.info(f"          Error: {result.error}")
    logger.info("")
    logger.info(report.summary())
    if report.cancelled:
        logger.warning("RUN CANCELLED")
    elif report.error is not None:
        logger.error(f"RUN FAILED: {report.error}")
    logger.info("=" * 60)


def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    playbook = load_playbook(args.playbook)
    plan = playbook.build_plan()

    passphrase = None
    if plan.requires_secrets:
        passphrase = read_passphrase(args.passphrase_file)

    if settings.audit:
        setup_audit_logging(settings.audit_dir)

    engine = ProvisionEngine(
        create_host(playbook.host),
        resolver=SecretResolver(settings.openssl),
        audit=settings.audit,
    )
    options = RunOptions(
        check=args.check,
        force_handlers=args.force_handlers or settings.force_handlers,
        default_timeout=args.timeout or settings.default_timeout,
    )

    def on_interrupt(signum, frame):
        if engine.cancel_requested:
            raise KeyboardInterrupt
        logger.warning("Interrupt received; stopping after the current step (again to abort)")
        engine.request_cancel()

    previous = signal.signal(signal.SIGINT, on_interrupt)
    try:
        report = engine.run(
            plan,
            variables=playbook.variables,
            secrets_file=playbook.secrets_file,
            passphrase=passphrase,
            options=options,
        )
    finally:
        signal.signal(signal.SIGINT, previous)
        passphrase = None

    log_report(report)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    return report.exit_code


def cmd_plan(args: argparse.Namespace, settings: Settings) -> int:
    playbook = load_playbook(args.playbook)
    plan = playbook.build_plan()
    print(f"Playbook: {playbook.name} (host {playbook.host.name}, {playbook.host.connection})")
    for line in plan.describe():
        print(line)
    if plan.requires_secrets:
        print(f"Secrets: {playbook.secrets_file or 'required but no secrets_file set'}")
    return 0


def cmd_secrets_encrypt(args: argparse.Namespace, settings: Settings) -> int:
    try:
        with open(args.input) as f:
            values = yaml.safe_load(f)
    except OSError as e:
        raise SecretError(f"Cannot read {args.input}: {e.strerror}") from None
    except yaml.YAMLError:
        raise SecretError(f"{args.input} is not valid YAML") from None
    if not isinstance(values, dict):
        raise SecretError(f"{args.input} must contain a mapping")

    passphrase = read_passphrase(args.passphrase_file, confirm=True)
    SecretResolver(settings.openssl).encrypt(values, passphrase, args.output)
    logger.info(f"Encrypted {len(values)} secret(s) into {args.output}")
    return 0


def cmd_secrets_keys(args: argparse.Namespace, settings: Settings) -> int:
    passphrase = read_passphrase(args.passphrase_file)
    secrets = SecretResolver(settings.openssl).resolve(args.store, passphrase)
    try:
        for key in sorted(secrets):
            print(key)
    finally:
        secrets.wipe()
    return 0


def cmd_history(args: argparse.Namespace, settings: Settings) -> int:
    audit_dir = os.path.expanduser(settings.audit_dir or "~/.hostwright")
    records = get_recent_changes(
        os.path.join(audit_dir, "audit.log"),
        host=args.host,
        task=args.task,
        limit=args.limit,
    )
    for record in records:
        mode = " (check)" if record.check_mode else ""
        print(f"{record.timestamp}  {record.host}  {record.status:8s} {record.task}{mode}")
        if record.error:
            print(f"    {record.error}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hostwright",
        description="Declarative single-host provisioning",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Preview changes
    hostwright run site.yaml --check

    # Apply with the secrets passphrase in a file
    hostwright run site.yaml --passphrase-file ~/.hostwright-pass

    # Create an encrypted secrets store
    hostwright secrets encrypt secrets.yaml secrets.enc

Exit codes:
    0 success, 2 usage, 3 probe, 4 plan, 5 task, 6 rule order,
    7 rule apply, 8 secret, 130 interrupted
""",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", type=Path, help="Settings file")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", parents=[common], help="Apply a playbook")
    run.add_argument("playbook", type=Path)
    run.add_argument("--check", action="store_true", help="Report changes without applying them")
    run.add_argument("--passphrase-file", type=Path, help="File holding the secrets passphrase")
    run.add_argument("--force-handlers", action="store_true",
                     help="Run notified handlers even after a failure")
    run.add_argument("--timeout", type=float, help="Default per-command timeout in seconds")
    run.add_argument("--json", action="store_true", help="Print the run report as JSON")
    run.set_defaults(func=cmd_run)

    plan = sub.add_parser("plan", parents=[common], help="Validate a playbook and list its tasks")
    plan.add_argument("playbook", type=Path)
    plan.set_defaults(func=cmd_plan)

    secrets = sub.add_parser("secrets", help="Manage the encrypted secrets store")
    secrets_sub = secrets.add_subparsers(dest="secrets_command", required=True)
    encrypt = secrets_sub.add_parser("encrypt", parents=[common], help="Encrypt a plaintext YAML mapping")
    encrypt.add_argument("input", type=Path)
    encrypt.add_argument("output", type=Path)
    encrypt.add_argument("--passphrase-file", type=Path)
    encrypt.set_defaults(func=cmd_secrets_encrypt)
    keys = secrets_sub.add_parser("keys", parents=[common], help="Check the passphrase and list secret names")
    keys.add_argument("store", type=Path)
    keys.add_argument("--passphrase-file", type=Path)
    keys.set_defaults(func=cmd_secrets_keys)

    history = sub.add_parser("history", parents=[common], help="Show recent changes from the audit log")
    history.add_argument("--host")
    history.add_argument("--task")
    history.add_argument("--limit", type=int, default=20)
    history.set_defaults(func=cmd_history)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the hostwright CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = Settings.load(args.config)
    level = logging.DEBUG if args.verbose else None
    if level is None and settings.log_level:
        level = getattr(logging, settings.log_level.upper(), None)
    setup_logging(level=level, log_file=Path(settings.log_file) if settings.log_file else None)

    try:
        return args.func(args, settings)
    except HostwrightError as e:
        logger.error(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
