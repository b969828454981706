#!/usr/bin/env python3
"""
phiguard Command Line Interface

Usage:
    phiguard encrypt <value> [--key-type phi|audit] [--algorithm gcm|cbc]
    phiguard decrypt <value> [--key-type phi|audit] [--strict]
    phiguard audit-create --action <name> --resource <name> [--details <json>] [--append]
    phiguard audit-verify [--file <jsonl>]
    phiguard lockout-status <identity>
    phiguard lockout-list
    phiguard lockout-unblock <identity> [--admin-token <t>] --operator <who> --reason <why>
    phiguard lockout-clear-all [--admin-token <t>] --operator <who> --reason <why>
    phiguard config-check

Key material and policy come from PHIGUARD_* environment variables. Override
commands prompt for the admin token unless PHIGUARD_ADMIN_TOKEN_INPUT is set.
"""

import argparse
import getpass
import json
import os
import sys
from typing import List, Optional

from . import config
from .logging_config import configure_logging

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

ADMIN_TOKEN_INPUT_ENV = "PHIGUARD_ADMIN_TOKEN_INPUT"


def _engine(args):
    from .encryption import EncryptionEngine
    return EncryptionEngine(strict=True if getattr(args, "strict", False) else None)


def _store(args):
    from .stores import get_attempt_store
    return get_attempt_store(args.store, args.db)


def _check_admin_token(args) -> bool:
    from .util import constant_time_compare

    if not config.ADMIN_TOKEN:
        print("Administrative overrides are disabled (PHIGUARD_ADMIN_TOKEN is not set)", file=sys.stderr)
        return False
    if not args.admin_token or not constant_time_compare(args.admin_token, config.ADMIN_TOKEN):
        print("Invalid admin token", file=sys.stderr)
        return False
    return True


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


# ============================================================
# Encryption
# ============================================================

def cmd_encrypt(args) -> int:
    """Encrypt one value and print the ciphertext."""
    from .encryption import EncryptionError

    with _engine(args) as engine:
        try:
            print(engine.encrypt(args.value, args.key_type, args.algorithm))
        except EncryptionError as e:
            print(f"✗ {e}", file=sys.stderr)
            return EXIT_FAILURE
    return EXIT_OK


def cmd_decrypt(args) -> int:
    """Decrypt one value (or decode legacy data) and print the plaintext."""
    from .encryption import EncryptionError

    with _engine(args) as engine:
        try:
            print(engine.decrypt(args.value, args.key_type))
        except EncryptionError as e:
            print(f"✗ {e}", file=sys.stderr)
            return EXIT_FAILURE
    return EXIT_OK


# ============================================================
# Audit
# ============================================================

def cmd_audit_create(args) -> int:
    """Create an audit entry; print it, or append it to the trail."""
    from .audit import AuditCodec, JsonlFileAuditSink

    try:
        details = json.loads(args.details) if args.details else {}
    except ValueError as e:
        print(f"--details is not valid JSON: {e}", file=sys.stderr)
        return EXIT_USAGE
    if not isinstance(details, dict):
        print("--details must be a JSON object", file=sys.stderr)
        return EXIT_USAGE

    with _engine(args) as engine:
        entry = AuditCodec(engine).create_entry(args.action, args.resource, details)

    if args.append:
        JsonlFileAuditSink(args.audit_log).write(entry)
        print(f"Audit entry appended to: {args.audit_log}")
    else:
        print(entry)
    return EXIT_OK


def cmd_audit_verify(args) -> int:
    """Verify every entry of a JSONL audit trail."""
    from .audit import AuditCodec, JsonlFileAuditSink

    path = args.file or args.audit_log
    entries = JsonlFileAuditSink(path).read_all()

    with _engine(args) as engine:
        report = AuditCodec(engine).verify_trail(entries)

    _print_json(report.to_dict())
    if report.is_intact():
        print(f"\n✓ {report.valid}/{report.total} entries verified", file=sys.stderr)
        return EXIT_OK
    print(
        f"\n✗ {report.mismatched} mismatched, {report.unreadable} unreadable "
        f"of {report.total}",
        file=sys.stderr
    )
    return EXIT_FAILURE


# ============================================================
# Lockouts
# ============================================================

def cmd_lockout_status(args) -> int:
    """Show attempt and block state for one identity."""
    from .attempts import AttemptTracker
    from .stores import normalize_identity

    with _store(args) as store:
        status = AttemptTracker(store).get_attempt_status(args.identity)

    _print_json({"identity": normalize_identity(args.identity), **status.to_dict()})
    return EXIT_OK


def cmd_lockout_list(args) -> int:
    """List tracked identities."""
    from .attempts import AttemptTracker

    with _store(args) as store:
        records = AttemptTracker(store).list_records()

    _print_json([r.to_dict() for r in records])
    return EXIT_OK


def _read_admin_token(args) -> str:
    """--admin-token, else PHIGUARD_ADMIN_TOKEN_INPUT, else an interactive prompt."""
    if args.admin_token:
        return args.admin_token
    env_token = os.environ.get(ADMIN_TOKEN_INPUT_ENV)
    if env_token:
        return env_token
    return getpass.getpass("Admin token: ")


def _audited_override(args, operation: str, run, **details) -> int:
    from .admin import AuditWriteError, audited_override
    from .attempts import AttemptTracker
    from .audit import AuditCodec, JsonlFileAuditSink

    if config.ADMIN_TOKEN:
        args.admin_token = _read_admin_token(args)
    if not _check_admin_token(args):
        return EXIT_USAGE

    with _engine(args) as engine, _store(args) as store:
        tracker = AttemptTracker(store)
        try:
            outcome = audited_override(
                AuditCodec(engine),
                JsonlFileAuditSink(args.audit_log),
                operation,
                args.operator,
                args.reason,
                lambda: run(tracker),
                **details
            )
        except AuditWriteError as e:
            print(f"✗ {e}; override refused", file=sys.stderr)
            return EXIT_FAILURE

    _print_json({**details, **outcome})
    return EXIT_OK


def cmd_lockout_unblock(args) -> int:
    """Emergency override: drop one identity's record."""
    from .stores import normalize_identity
    from .util import mask_identity

    return _audited_override(
        args,
        "ADMIN_EMERGENCY_UNBLOCK",
        lambda tracker: {"record_existed": tracker.emergency_unblock(args.identity)},
        identity=mask_identity(normalize_identity(args.identity)),
    )


def cmd_lockout_clear_all(args) -> int:
    """Emergency override: drop every record."""
    return _audited_override(
        args,
        "ADMIN_EMERGENCY_CLEAR_ALL",
        lambda tracker: {"records_removed": tracker.emergency_clear_all()},
    )


# ============================================================
# Configuration
# ============================================================

def cmd_config_check(args) -> int:
    """Report which required settings are present."""
    checks = config.validate_config()
    _print_json(checks)
    missing = [name for name, ok in checks.items() if not ok]
    if missing:
        print(f"\n✗ Not configured: {', '.join(missing)}", file=sys.stderr)
        return EXIT_FAILURE
    print("\n✓ Configuration complete", file=sys.stderr)
    return EXIT_OK


# ============================================================
# Entry point
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phiguard",
        description="PHI field encryption, audit entries and login lockouts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  phiguard encrypt "123-45-6789"
  phiguard decrypt "gcm:..."
  phiguard audit-create --action PATIENT_VIEWED --resource patients --append
  phiguard audit-verify
  phiguard lockout-status jane@example.com
  phiguard lockout-unblock jane@example.com --operator ops --reason "ticket 42"
        """
    )
    parser.add_argument("--store", choices=["memory", "sqlite"], help="Attempt store backend")
    parser.add_argument("--db", help="SQLite attempt database path")
    parser.add_argument("--audit-log", default=None, help="JSONL audit trail path")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # encrypt
    enc_parser = subparsers.add_parser("encrypt", help="Encrypt a value")
    enc_parser.add_argument("value", help="Plaintext")
    enc_parser.add_argument("-k", "--key-type", default="phi", choices=["phi", "audit"])
    enc_parser.add_argument("-a", "--algorithm", choices=["gcm", "cbc"], help="Override the default algorithm")

    # decrypt
    dec_parser = subparsers.add_parser("decrypt", help="Decrypt a value")
    dec_parser.add_argument("value", help="Ciphertext or legacy value")
    dec_parser.add_argument("-k", "--key-type", default="phi", choices=["phi", "audit"])
    dec_parser.add_argument("--strict", action="store_true", help="Fail instead of degrading")

    # audit-create
    ac_parser = subparsers.add_parser("audit-create", help="Create an audit entry")
    ac_parser.add_argument("--action", required=True)
    ac_parser.add_argument("--resource", required=True)
    ac_parser.add_argument("--details", help="JSON object")
    ac_parser.add_argument("--append", action="store_true", help="Append to the audit trail")

    # audit-verify
    av_parser = subparsers.add_parser("audit-verify", help="Verify a JSONL audit trail")
    av_parser.add_argument("-f", "--file", help="Trail to verify (default: --audit-log)")

    # lockout-status
    ls_parser = subparsers.add_parser("lockout-status", help="Show lockout state")
    ls_parser.add_argument("identity")

    # lockout-list
    subparsers.add_parser("lockout-list", help="List tracked identities")

    # overrides
    for name, help_text, with_identity in (
        ("lockout-unblock", "Emergency unblock of one identity", True),
        ("lockout-clear-all", "Emergency clear of every record", False),
    ):
        p = subparsers.add_parser(name, help=help_text)
        if with_identity:
            p.add_argument("identity")
        p.add_argument(
            "--admin-token",
            help=f"Admin token (default: ${ADMIN_TOKEN_INPUT_ENV}, else prompt)"
        )
        p.add_argument("--operator", required=True)
        p.add_argument("--reason", required=True)

    # config-check
    subparsers.add_parser("config-check", help="Report missing configuration")

    return parser


COMMANDS = {
    "encrypt": cmd_encrypt,
    "decrypt": cmd_decrypt,
    "audit-create": cmd_audit_create,
    "audit-verify": cmd_audit_verify,
    "lockout-status": cmd_lockout_status,
    "lockout-list": cmd_lockout_list,
    "lockout-unblock": cmd_lockout_unblock,
    "lockout-clear-all": cmd_lockout_clear_all,
    "config-check": cmd_config_check,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_USAGE

    level = args.log_level or ("DEBUG" if config.is_debug() else config.LOG_LEVEL)
    configure_logging(level, config.LOG_JSON)
    if args.audit_log is None:
        args.audit_log = config.AUDIT_LOG_PATH

    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
