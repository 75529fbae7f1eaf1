"""Manage a Terraform-provisioned AWS access key.

Commands:
  - create:           terraform apply, then print the decrypted key.
  - rotate:           verify identity, confirm, terraform destroy + apply, print the new key.
  - delete:           verify identity, confirm, terraform destroy.
  - decrypt:          print the decrypted key from terraform outputs.
  - update:           set the key status (Active or Inactive, default Active).
  - bw-sync:          write decrypted output into a Bitwarden item.
  - bws-sync:         write decrypted output into a Bitwarden Secrets Manager secret.
  - external-decrypt: Terraform `external` data source program.

Exit codes:
  - 0: success
  - 1: failure, identity mismatch, invalid input or declined confirmation
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence

from . import __version__
from .backends import AwsCli, Terraform, make_decryptor
from .common import configure_logging, die, require_tool
from .config import Config, load_config
from .stores import SecretStore, make_store
from .workflows import (
    KeyCtx,
    exec_create,
    exec_decrypt,
    exec_delete,
    exec_external_decrypt,
    exec_rotate,
    exec_update,
    sync_secret_store,
)

PROG = "aws-keyctl"
SYNC_COMMANDS = {"bw-sync": "bw", "bws-sync": "bws"}


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        die(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog=PROG, description="Manage AWS Keys.")
    parser.add_argument("-D", "--debug", action="store_true", help="Enable debug (trace every external command)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", default=None, help="YAML config file (default: ./aws-keyctl.yaml if present)")
    parser.add_argument("--chdir", default=None, help="Terraform root module directory")
    sub = parser.add_subparsers(dest="cmd", required=True, metavar="<command>")

    sub.add_parser("create", help="Create a new AWS Key")
    sub.add_parser("rotate", help="Rotate an existing AWS Key")
    sub.add_parser("delete", help="Delete an existing AWS Key")
    sub.add_parser("decrypt", help="Output decrypted AWS Key")

    p_update = sub.add_parser("update", help="Update the status of an AWS Key (default: Active)")
    p_update.add_argument("status", nargs="?", default="Active", help="Active or Inactive")
    p_update.add_argument("--ignore-case", action="store_true", help="Accept any casing of the status value")

    for name, store in SYNC_COMMANDS.items():
        p_sync = sub.add_parser(name, help=f"Sync decrypted output into the {store} secret store")
        p_sync.add_argument("name", nargs="?", default=None, help="Target record name (default: from terraform workspace)")
        p_sync.add_argument("--input", default=None, help="Read decrypted output from this file instead of stdin")
        p_sync.add_argument("--show-secrets", action="store_true", help="Show secret values in the diff")

    sub.add_parser("external-decrypt", help="Terraform external data source: decrypt JSON from stdin")
    return parser


def build_key_ctx(config: Config) -> KeyCtx:
    return KeyCtx(
        provisioner=Terraform(bin=config.terraform_bin, chdir=config.terraform_chdir),
        identity=AwsCli(bin=config.aws_bin, profile=config.aws_profile),
        decryptor=make_decryptor(config),
    )


def build_store(kind: str, config: Config) -> SecretStore:
    return make_store(kind, config.bw if kind == "bw" else config.bws)


def required_tools(cmd: str, config: Config, *, has_name: bool = False) -> List[str]:
    if cmd in {"create", "decrypt"}:
        return [config.terraform_bin, config.decryptor_tool]
    if cmd == "rotate":
        return [config.terraform_bin, config.aws_bin, config.decryptor_tool]
    if cmd in {"delete", "update"}:
        return [config.terraform_bin, config.aws_bin]
    if cmd in SYNC_COMMANDS:
        store = config.bw if SYNC_COMMANDS[cmd] == "bw" else config.bws
        return [store.bin] if has_name else [store.bin, config.terraform_bin]
    if cmd == "external-decrypt":
        return [config.decryptor_tool]
    return []


def read_sync_input(path: Optional[str]) -> str:
    if path:
        p = Path(path)
        if not p.exists():
            die(f"Input file not found: {p}")
        return p.read_text(encoding="utf-8")
    if sys.stdin.isatty():
        die("No decrypted output on stdin (pipe `aws-keyctl decrypt` into this command or pass --input)")
    return sys.stdin.read()


def dispatch(args: argparse.Namespace, config: Config) -> int:
    cmd = str(args.cmd)
    for tool in required_tools(cmd, config, has_name=bool(getattr(args, "name", None))):
        require_tool(tool)

    if cmd == "external-decrypt":
        exec_external_decrypt(make_decryptor(config), sys.stdin, sys.stdout)
        return 0

    if cmd in SYNC_COMMANDS:
        text = read_sync_input(args.input)
        store = build_store(SYNC_COMMANDS[cmd], config)
        terraform = Terraform(bin=config.terraform_bin, chdir=config.terraform_chdir)
        sync_secret_store(
            text,
            store,
            workspace=terraform.workspace,
            field_names={
                "access_key_id": config.access_key_id_field,
                "secret_access_key": config.secret_access_key_field,
            },
            target_name=args.name,
            diff_command=config.diff_command,
            show_secrets=bool(args.show_secrets),
        )
        return 0

    ctx = build_key_ctx(config)
    if cmd == "create":
        exec_create(ctx)
    elif cmd == "rotate":
        exec_rotate(ctx)
    elif cmd == "delete":
        exec_delete(ctx)
    elif cmd == "decrypt":
        exec_decrypt(ctx)
    elif cmd == "update":
        mode = "ignore-case" if args.ignore_case else config.status_match
        exec_update(ctx, args.status, mode=mode)
    else:
        die(f"Unknown COMMAND: '{cmd}'")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        parser.print_help()
        return 0

    args = parser.parse_args(argv)
    configure_logging(bool(args.debug))
    config = load_config(args.config)
    if args.chdir:
        config = replace(config, terraform_chdir=args.chdir)

    try:
        return dispatch(args, config)
    except KeyboardInterrupt:
        print("ERROR: Interrupted", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
