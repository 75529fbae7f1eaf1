"""Access key workflows: create, rotate, delete, decrypt, update, secret-store sync.

Every mutating workflow (rotate, delete, update) first checks that the caller
identity recorded in terraform state still matches the live AWS session.
Nothing is retried. Rotation is destroy-then-apply, so a failure or interrupt
between the two leaves the user without an access key until `create` succeeds.
"""

from __future__ import annotations

import base64
import binascii
import difflib
import hashlib
import json
import logging
import re
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TextIO

from .backends import Decryptor, IdentityProvider, ProvisioningBackend, identity_from_output
from .common import COLOR_NORMAL, COLOR_SUCCESS, abort, as_text, die, run, success_marker, use_color
from .confirm import confirm
from .stores import SecretStore

log = logging.getLogger("aws_keyctl")

OUTPUT_CALLER_IDENTITY = "aws_caller_identity"
OUTPUT_USER_NAME = "aws_user_name"
OUTPUT_ACCESS_KEY_ID = "aws_access_key_id"
OUTPUT_ENCRYPTED_SECRET = "encrypted_secret"

KEY_ACCESS_KEY_ID = "aws_access_key_id"
KEY_DECRYPTED_SECRET = "aws_decrypted_secret"

KEY_STATUSES = ("Active", "Inactive")

_ASSIGNMENT_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*?)\s*$")


@dataclass(frozen=True)
class DecryptedCredential:
    user_name: str
    access_key_id: str
    decrypted_secret: str


@dataclass
class KeyCtx:
    provisioner: ProvisioningBackend
    identity: IdentityProvider
    decryptor: Decryptor
    ask: Callable[..., bool] = confirm
    out: TextIO = field(default_factory=lambda: sys.stdout)

    def echo(self, text: str = "") -> None:
        self.out.write(text + "\n")
        self.out.flush()

    def success(self) -> None:
        self.out.write(success_marker(self.out) + "\n")
        self.out.flush()


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------
def verify_identity(ctx: KeyCtx) -> None:
    recorded_raw = ctx.provisioner.output_json(OUTPUT_CALLER_IDENTITY)
    ctx.echo("Previously invoked identity (tfstate): ")
    ctx.echo(json.dumps(recorded_raw, indent=2, sort_keys=True))
    recorded = identity_from_output(recorded_raw)

    current = ctx.identity.caller_identity()
    ctx.echo("Current AWS Identity: ")
    ctx.echo(json.dumps(current.as_dict(), indent=2, sort_keys=True))

    log.info("Validating tfstate identity is the same as current aws identity...")
    mismatch = recorded.first_mismatch(current)
    if mismatch:
        name, orig, new = mismatch
        die(f"Detected Identity mismatch on {name!r}! '{orig}' != '{new}'")
    ctx.success()


# ---------------------------------------------------------------------------
# Decrypt
# ---------------------------------------------------------------------------
def decode_ciphertext(encoded: str) -> bytes:
    try:
        return base64.b64decode("".join(encoded.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        die(f"encrypted secret is not valid base64: {e}")
        return b""  # unreachable


def _required_output(ctx: KeyCtx, name: str) -> str:
    value = ctx.provisioner.output(name)
    if not value:
        die(f"terraform output {name!r} is empty (has the access key been created? run `create` first)")
    return value


def read_credential(ctx: KeyCtx) -> DecryptedCredential:
    user_name = _required_output(ctx, OUTPUT_USER_NAME)
    access_key_id = _required_output(ctx, OUTPUT_ACCESS_KEY_ID)
    encrypted = _required_output(ctx, OUTPUT_ENCRYPTED_SECRET)
    secret = ctx.decryptor.decrypt(decode_ciphertext(encrypted))
    return DecryptedCredential(user_name=user_name, access_key_id=access_key_id, decrypted_secret=secret)


def render_credential(cred: DecryptedCredential, *, color: bool = False) -> str:
    title = f"{COLOR_SUCCESS}Decrypted Outputs:{COLOR_NORMAL}" if color else "Decrypted Outputs:"
    lines = [
        "",
        title,
        "",
        f'{OUTPUT_USER_NAME} = "{cred.user_name}"',
        f'{KEY_ACCESS_KEY_ID} = "{cred.access_key_id}"',
        f'{KEY_DECRYPTED_SECRET} = "{cred.decrypted_secret}"',
        "",
    ]
    return "\n".join(lines) + "\n"


def show_credential(ctx: KeyCtx) -> DecryptedCredential:
    cred = read_credential(ctx)
    ctx.out.write(render_credential(cred, color=use_color(ctx.out)))
    ctx.out.flush()
    return cred


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
def exec_create(ctx: KeyCtx) -> DecryptedCredential:
    log.info("Exec Create AWS Key...")
    ctx.provisioner.apply()
    return show_credential(ctx)


def exec_decrypt(ctx: KeyCtx) -> DecryptedCredential:
    log.info("Exec Decrypt AWS Key...")
    return show_credential(ctx)


def rotate_key(ctx: KeyCtx) -> None:
    access_key_id = _required_output(ctx, OUTPUT_ACCESS_KEY_ID)
    if not ctx.ask(f"Rotate aws access key '{access_key_id}' ?"):
        abort(f"Skipped rotating access key '{access_key_id}'")
    log.info("Rotating access key with terraform destroy, then apply...")
    ctx.provisioner.destroy()
    try:
        ctx.provisioner.apply()
    except SystemExit:
        log.error(
            "Access key '%s' was destroyed but terraform apply failed; "
            "the user has no access key until `aws-keyctl create` succeeds",
            access_key_id,
        )
        raise


def exec_rotate(ctx: KeyCtx) -> DecryptedCredential:
    log.info("Exec Rotate AWS Key...")
    verify_identity(ctx)
    rotate_key(ctx)
    return show_credential(ctx)


def exec_delete(ctx: KeyCtx) -> None:
    log.info("Exec Delete AWS Key...")
    verify_identity(ctx)
    access_key_id = _required_output(ctx, OUTPUT_ACCESS_KEY_ID)
    if not ctx.ask(f"Delete aws access key '{access_key_id}' ?"):
        abort(f"Skipped deleting access key '{access_key_id}'")
    log.info("Deleting access key with terraform destroy...")
    ctx.provisioner.destroy()
    ctx.success()


def normalize_status(value: Optional[str], *, mode: str = "strict") -> str:
    """Return the canonical key status or exit.

    ``strict`` upper-cases only the first character and then requires an exact
    match, so ``active`` passes and ``ACTIVE`` does not. ``ignore-case`` accepts
    any casing.
    """
    raw = "Active" if value is None else value
    if mode == "ignore-case":
        for status in KEY_STATUSES:
            if raw.casefold() == status.casefold():
                return status
        candidate = raw
    else:
        candidate = raw[:1].upper() + raw[1:]
        if candidate in KEY_STATUSES:
            return candidate
    die(
        f"Value '{candidate}' at 'status' failed to satisfy constraint: "
        f"Member must satisfy enum value set: [{', '.join(KEY_STATUSES)}]"
    )
    return ""  # unreachable


def exec_update(ctx: KeyCtx, status: Optional[str] = None, *, mode: str = "strict") -> None:
    status = normalize_status(status, mode=mode)
    log.info("Exec Update AWS Key...")
    verify_identity(ctx)

    user = _required_output(ctx, OUTPUT_USER_NAME)
    key_id = _required_output(ctx, OUTPUT_ACCESS_KEY_ID)
    log.info("Updating %s '%s' to status '%s'", user, key_id, status)
    ctx.identity.update_access_key(access_key_id=key_id, status=status, user_name=user)
    ctx.success()


# ---------------------------------------------------------------------------
# Secret-store sync
# ---------------------------------------------------------------------------
def parse_decrypted_output(text: str) -> Dict[str, str]:
    """Extract ``key = "value"`` assignments from `decrypt` output."""
    values: Dict[str, str] = {}
    for line in text.splitlines():
        m = _ASSIGNMENT_RE.match(line)
        if not m:
            continue
        key, value = m.group(1), m.group(2)
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1]
        values[key] = value
    return values


def extract_key_pair(text: str) -> Dict[str, str]:
    if not text.strip():
        die("No decrypted output to sync (pipe `aws-keyctl decrypt` into this command or pass --input)")
    values = parse_decrypted_output(text)
    missing = [k for k in (KEY_ACCESS_KEY_ID, KEY_DECRYPTED_SECRET) if not values.get(k)]
    if missing:
        die(f"Decrypted output is missing: {', '.join(missing)}")
    return {KEY_ACCESS_KEY_ID: values[KEY_ACCESS_KEY_ID], KEY_DECRYPTED_SECRET: values[KEY_DECRYPTED_SECRET]}


def resolve_target_name(store: SecretStore, explicit: Optional[str], workspace: Callable[[], str]) -> str:
    if explicit:
        return explicit
    template = store.name_template
    try:
        if "{workspace}" in template:
            return template.format(workspace=workspace())
        return template.format()
    except (KeyError, IndexError, ValueError) as e:
        die(f"Invalid {store.label} name_template {template!r}: {e}")
        return ""  # unreachable


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def _fingerprint(value: Any) -> str:
    digest = hashlib.sha256(str(value).encode("utf-8")).hexdigest()[:12]
    return f"<redacted sha256:{digest}>"


def redact(obj: Any, secret_fields: Sequence[str]) -> Any:
    """Replace secret values with a short fingerprint so diffs stay readable."""
    if isinstance(obj, list):
        return [redact(v, secret_fields) for v in obj]
    if not isinstance(obj, dict):
        return obj
    out: Dict[str, Any] = {}
    named_secret = obj.get("name") in secret_fields and "value" in obj
    for k, v in obj.items():
        if k in secret_fields or (named_secret and k == "value"):
            out[k] = _fingerprint(v)
        else:
            out[k] = redact(v, secret_fields)
    return out


def describe_record(record: Mapping[str, Any], requested: str) -> str:
    """Label the fetched record by its own name and id, not the name that was asked for."""
    actual = record.get("name") or record.get("key") or requested
    rid = record.get("id")
    return f"{actual} [id {rid}]" if rid else str(actual)


def render_diff(current: str, updated: str, *, label: str, record_label: Optional[str] = None, diff_command: Optional[Sequence[str]] = None) -> str:
    if diff_command:
        return external_diff(current, updated, diff_command=diff_command)
    return "".join(
        difflib.unified_diff(
            current.splitlines(keepends=True),
            updated.splitlines(keepends=True),
            fromfile=f"{record_label or label} (current)",
            tofile=f"{record_label or label} (updated)",
        )
    )


def external_diff(current: str, updated: str, *, diff_command: Sequence[str]) -> str:
    with tempfile.TemporaryDirectory(prefix="aws-keyctl-") as tmp:
        a = Path(tmp) / "current.json"
        b = Path(tmp) / "updated.json"
        a.write_text(current, encoding="utf-8")
        b.write_text(updated, encoding="utf-8")
        try:
            res = run([*diff_command, str(a), str(b)], check=False, action=diff_command[0])
        except OSError as e:
            die(f"Could not run {diff_command[0]} ({e.strerror or e}); refusing to sync")
            raise  # unreachable
        if res.returncode not in (0, 1):
            die(f"Unexpected result from {diff_command[0]} (exit code {res.returncode}); refusing to sync")
        return as_text(res.stdout)


def sync_secret_store(
    text: str,
    store: SecretStore,
    *,
    workspace: Callable[[], str],
    field_names: Mapping[str, str],
    target_name: Optional[str] = None,
    ask: Callable[..., bool] = confirm,
    out: Optional[TextIO] = None,
    diff_command: Optional[Sequence[str]] = None,
    show_secrets: bool = False,
) -> bool:
    """Write a freshly decrypted key pair into the secret store.

    ``field_names`` maps ``access_key_id``/``secret_access_key`` to the record
    field names. Returns False when the record already holds the pair (nothing
    written), True after a confirmed edit.
    """
    out = out or sys.stdout
    pair = extract_key_pair(text)

    store.ensure_ready()
    name = resolve_target_name(store, target_name, workspace)
    log.info("Syncing access key into %s record '%s'...", store.label, name)

    current = store.fetch(name)
    secret_field = field_names["secret_access_key"]
    updates = {
        field_names["access_key_id"]: pair[KEY_ACCESS_KEY_ID],
        secret_field: pair[KEY_DECRYPTED_SECRET],
    }
    updated = store.apply_updates(current, updates, hidden=(secret_field,))

    if canonical_json(current) == canonical_json(updated):
        out.write(f"No changes to sync; '{name}' is already up to date.\n")
        return False

    hidden = () if show_secrets else (secret_field,)
    record_label = describe_record(current, name)
    out.write(f"Changes to {store.label} record {record_label}:\n")
    diff = render_diff(
        canonical_json(redact(current, hidden)),
        canonical_json(redact(updated, hidden)),
        label=name,
        record_label=record_label,
        diff_command=diff_command,
    )
    out.write(diff if diff.endswith("\n") or not diff else diff + "\n")
    out.flush()

    if not ask(f"Sync changes to '{name}' ?"):
        abort(f"Skipped syncing '{name}'")

    store.save(updated)
    store.sync()
    out.write(success_marker(out) + "\n")
    return True


def exec_external_decrypt(decryptor: Decryptor, stdin: TextIO, out: TextIO) -> None:
    """Terraform `external` data source: {"encrypted_secret"} in, {"decrypted_secret"} out."""
    try:
        query = json.load(stdin)
    except ValueError as e:
        die(f"external-decrypt expects a JSON object on stdin: {e}")
        query = None  # unreachable
    if not isinstance(query, dict) or not isinstance(query.get("encrypted_secret"), str):
        die("external-decrypt input must contain string field 'encrypted_secret'")
    secret = decryptor.decrypt(decode_ciphertext(query["encrypted_secret"]))
    out.write(json.dumps({"decrypted_secret": secret}) + "\n")
