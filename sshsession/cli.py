#!/usr/bin/env python3
"""
sshsession  —  run commands and move files over one SSH session
================================================================

Subcommands:
  init        Create a .sshsession config file in the current directory.
  check       Connect, authenticate and report the session state.
  run         Run a command remotely; exits with the remote exit status.
  put         Upload a local file.
  get         Download a remote file (to stdout when no local path is given).
  identities  List the identities offered by ssh-agent.

Run 'sshsession <subcommand> --help' for more details.
"""
import argparse
import os
import sys
from pathlib import Path

from . import config as _cfg
from .core.session import Session
from .errors import SSHConnectionError, SSHError
from .utils.logging import log, set_verbose, tagged
from .utils.retry import retried

PASSWORD_ENV = "SSHSESSION_PASSWORD"

_log = tagged("SSH")


# ── shared ───────────────────────────────────────────────────────────────────

def _resolve_target(args) -> tuple[str, int, str]:
    profile = _cfg.load_profile(getattr(args, "profile", None) or "default")
    _cfg.apply_profile(profile)
    host = args.host or _cfg.SSH_HOST
    port = args.port or _cfg.SSH_PORT
    user = args.user or _cfg.SSH_USER
    return host, port, user


def open_session(args) -> Session:
    """Build a Session from profile + flags and authenticate it."""
    host, port, user = _resolve_target(args)
    password = _cfg.SSH_PASSWORD or os.environ.get(PASSWORD_ENV)
    ssh = Session(host, port)

    @retried(retry_on=(SSHConnectionError,))
    def _connect():
        if password:
            ssh.connect(user, password)
        else:
            ssh.connect_agent(user)

    _log.vlog(f"connecting to {user}@{host}:{port} …")
    _connect()
    _log.vlog("connected ✓")
    return ssh


# ── init ─────────────────────────────────────────────────────────────────────

def cmd_init(args):
    """Create a .sshsession profile file in the current directory."""
    target = Path.cwd() / _cfg.PROJECT_FILE

    if target.exists() and not args.force:
        print(f"error: {_cfg.PROJECT_FILE} already exists in {Path.cwd()}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        sys.exit(1)

    g_defaults = _cfg.load_global_config().get("defaults", {}) or {}

    server = args.host or g_defaults.get("server", _cfg.SSH_HOST)
    if not args.host and sys.stdin.isatty():
        val = input(f"Server hostname [{server}]: ").strip()
        if val:
            server = val

    user = args.user or g_defaults.get("user", _cfg.SSH_USER)
    if not args.user and sys.stdin.isatty():
        val = input(f"SSH user [{user}]: ").strip()
        if val:
            user = val

    port = args.port or int(g_defaults.get("port", _cfg.SSH_PORT))
    if not args.port and sys.stdin.isatty():
        val = input(f"SSH port [{port}]: ").strip()
        if val:
            try:
                port = int(val)
            except ValueError:
                print("error: port must be a number.", file=sys.stderr)
                sys.exit(1)

    def _yq(value: str) -> str:
        """Wrap a string in YAML single quotes, escaping embedded single quotes."""
        return "'" + value.replace("'", "''") + "'"

    lines = [
        "# .sshsession — sshsession connection profiles",
        "#",
        "# Each profile has: name, server, port, user.",
        "# Optional: password (omit to use ssh-agent), connect_timeout,",
        "#           command_timeout, keepalive, atomic_upload, upload_mode.",
        "profiles:",
        f"  - name: {args.profile or 'default'}",
        f"    server: {_yq(str(server))}",
        f"    port: {port}",
        f"    user: {_yq(str(user))}",
        f"    keepalive: {_cfg.KEEPALIVE_INTERVAL}",
        f"    atomic_upload: {'true' if _cfg.ATOMIC_UPLOAD else 'false'}",
    ]
    content = "\n".join(lines) + "\n"

    if args.dry_run:
        print(f"[dry-run] Would write {target}:")
        print(content)
        return

    target.write_text(content, encoding="utf-8")
    print(f"Created {target}")
    if args.verbose:
        print(content)


# ── remote commands ──────────────────────────────────────────────────────────

def cmd_check(args):
    with open_session(args) as ssh:
        print(f"{ssh.host}:{ssh.port} authenticated: {ssh.authed()}")


def cmd_run(args):
    command = " ".join(args.cmd)
    if not command:
        print("error: a command is required.", file=sys.stderr)
        sys.exit(2)
    with open_session(args) as ssh:
        result = ssh.execute(command)
    sys.stdout.write(result.stdout)
    sys.stdout.flush()
    if result.stderr:
        sys.stderr.write(result.stderr)
    if result.exit_status != 0:
        sys.exit(result.exit_status if result.exit_status > 0 else 1)


def cmd_put(args):
    with open_session(args) as ssh:
        ssh.upload_file(args.local, args.remote)
    log(f"[PUT ✓] {args.local} → {args.remote}")


def cmd_get(args):
    with open_session(args) as ssh:
        if args.local:
            file_stat = ssh.download_file(args.remote, args.local)
            log(f"[GET ✓] {args.remote} → {args.local} ({file_stat.size} bytes)")
            return
        content, _ = ssh.get_file(args.remote)
    sys.stdout.buffer.write(content)
    sys.stdout.flush()


def cmd_identities(args):
    identities = Session.identities()
    if not identities:
        print("No identities available from ssh-agent.")
        return
    for comment, blob in identities.items():
        print(f"{comment}  ({len(blob)} bytes)")


# ── main ──────────────────────────────────────────────────────────────────────

def _add_target_args(p):
    p.add_argument("--profile", metavar="NAME", default="default",
                   help="Profile to use (default: default)")
    p.add_argument("--host", metavar="HOST", help="Remote host (overrides profile)")
    p.add_argument("--port", type=int, metavar="N", help="SSH port (overrides profile)")
    p.add_argument("--user", metavar="NAME", help="SSH username (overrides profile)")
    p.add_argument("-v", "--verbose", action="store_true", help="Show extra output")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshsession",
        description="Run commands and transfer files over one SSH session",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    init_p = subparsers.add_parser(
        "init",
        help="Create a .sshsession config file in the current directory",
        description="Create a .sshsession YAML config file for this project.",
    )
    init_p.add_argument("--host", metavar="HOST", help="Remote server hostname or IP")
    init_p.add_argument("--user", metavar="NAME", help="SSH username")
    init_p.add_argument("--port", type=int, metavar="N", help="SSH port (default: 22)")
    init_p.add_argument("--profile", metavar="NAME", default="default",
                        help="Profile name to create (default: default)")
    init_p.add_argument("--force", action="store_true", help="Overwrite existing .sshsession")
    init_p.add_argument("-n", "--dry-run", action="store_true",
                        help="Preview without writing files")
    init_p.add_argument("-v", "--verbose", action="store_true", help="Show extra output")

    check_p = subparsers.add_parser("check", help="Connect and report authentication state")
    _add_target_args(check_p)

    run_p = subparsers.add_parser("run", help="Run a command on the remote host")
    _add_target_args(run_p)
    run_p.add_argument("cmd", nargs=argparse.REMAINDER, help="Command line to execute")

    put_p = subparsers.add_parser("put", help="Upload a local file")
    _add_target_args(put_p)
    put_p.add_argument("local", help="Local file")
    put_p.add_argument("remote", help="Remote destination path")

    get_p = subparsers.add_parser("get", help="Download a remote file")
    _add_target_args(get_p)
    get_p.add_argument("remote", help="Remote file")
    get_p.add_argument("local", nargs="?", help="Local destination (default: stdout)")

    ident_p = subparsers.add_parser("identities", help="List ssh-agent identities")
    ident_p.add_argument("-v", "--verbose", action="store_true", help="Show extra output")

    return parser


COMMANDS = {
    "init": cmd_init,
    "check": cmd_check,
    "run": cmd_run,
    "put": cmd_put,
    "get": cmd_get,
    "identities": cmd_identities,
}


def main(argv=None):
    """CLI entry point for sshsession"""
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    set_verbose(getattr(args, "verbose", False))
    try:
        handler(args)
    except SSHError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
