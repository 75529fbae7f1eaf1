"""Optional YAML configuration for aws-keyctl.

Lookup order: ``--config PATH``, then ``$AWS_KEYCTL_CONFIG``, then
``./aws-keyctl.yaml``. Without a file the built-in defaults apply.

Example::

    version: 1
    terraform: {bin: terraform, chdir: infra/aws-key}
    aws: {bin: aws, profile: admin}
    decryptor: keybase            # keybase | gpg
    status_match: strict          # strict | ignore-case
    diff_command: [diff, -u]
    fields:
      access_key_id: AWS_ACCESS_KEY_ID
      secret_access_key: AWS_SECRET_ACCESS_KEY
    stores:
      bw: {bin: bw, name_template: "{workspace}"}
      bws: {bin: bws, name_template: "{workspace}/aws-key"}
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .common import die, load_yaml

DEFAULT_CONFIG_NAME = "aws-keyctl.yaml"
CONFIG_ENV_VAR = "AWS_KEYCTL_CONFIG"

DECRYPTORS = {"keybase", "gpg"}
STATUS_MATCH_MODES = {"strict", "ignore-case"}


@dataclass(frozen=True)
class StoreConfig:
    bin: str
    name_template: str


@dataclass(frozen=True)
class Config:
    terraform_bin: str = "terraform"
    terraform_chdir: Optional[str] = None
    aws_bin: str = "aws"
    aws_profile: Optional[str] = None
    decryptor: str = "keybase"
    decryptor_bin: Optional[str] = None
    status_match: str = "strict"
    diff_command: Optional[Tuple[str, ...]] = None
    access_key_id_field: str = "AWS_ACCESS_KEY_ID"
    secret_access_key_field: str = "AWS_SECRET_ACCESS_KEY"
    bw: StoreConfig = field(default_factory=lambda: StoreConfig(bin="bw", name_template="{workspace}"))
    bws: StoreConfig = field(default_factory=lambda: StoreConfig(bin="bws", name_template="{workspace}/aws-key"))
    source: Optional[Path] = None

    @property
    def decryptor_tool(self) -> str:
        return self.decryptor_bin or self.decryptor


def _section(doc: Mapping[str, Any], key: str, path: str) -> Dict[str, Any]:
    value = doc.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        die(f"{path}{key} must be a mapping")
    return value


def _opt_str(doc: Mapping[str, Any], key: str, path: str, default: Optional[str]) -> Optional[str]:
    value = doc.get(key)
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        die(f"{path}{key} must be a non-empty string")
    return value.strip()


def _enum(doc: Mapping[str, Any], key: str, allowed: set, default: str) -> str:
    value = _opt_str(doc, key, "", default)
    if value not in allowed:
        die(f"{key} must be one of {sorted(allowed)}, got: {value!r}")
    return str(value)


def _store(doc: Mapping[str, Any], key: str, default: StoreConfig) -> StoreConfig:
    sec = _section(doc, key, "stores.")
    path = f"stores.{key}."
    return StoreConfig(
        bin=str(_opt_str(sec, "bin", path, default.bin)),
        name_template=str(_opt_str(sec, "name_template", path, default.name_template)),
    )


def parse_config(doc: Any, *, source: Optional[Path] = None) -> Config:
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        die(f"Config file {source} must be a YAML mapping")
    version = doc.get("version")
    if version not in (1, "1"):
        die(f"Unsupported config version: {version!r} (expected 1)")

    defaults = Config()
    tf = _section(doc, "terraform", "")
    aws = _section(doc, "aws", "")
    fields = _section(doc, "fields", "")
    stores = _section(doc, "stores", "")

    diff_command: Optional[Tuple[str, ...]] = None
    raw_diff = doc.get("diff_command")
    if isinstance(raw_diff, str) and raw_diff.strip():
        diff_command = (raw_diff.strip(),)
    elif isinstance(raw_diff, list) and raw_diff and all(isinstance(a, str) and a for a in raw_diff):
        diff_command = tuple(raw_diff)
    elif raw_diff is not None:
        die("diff_command must be a string or a non-empty list of strings")

    return Config(
        terraform_bin=str(_opt_str(tf, "bin", "terraform.", defaults.terraform_bin)),
        terraform_chdir=_opt_str(tf, "chdir", "terraform.", None),
        aws_bin=str(_opt_str(aws, "bin", "aws.", defaults.aws_bin)),
        aws_profile=_opt_str(aws, "profile", "aws.", None),
        decryptor=_enum(doc, "decryptor", DECRYPTORS, defaults.decryptor),
        decryptor_bin=_opt_str(doc, "decryptor_bin", "", None),
        status_match=_enum(doc, "status_match", STATUS_MATCH_MODES, defaults.status_match),
        diff_command=diff_command,
        access_key_id_field=str(_opt_str(fields, "access_key_id", "fields.", defaults.access_key_id_field)),
        secret_access_key_field=str(_opt_str(fields, "secret_access_key", "fields.", defaults.secret_access_key_field)),
        bw=_store(stores, "bw", defaults.bw),
        bws=_store(stores, "bws", defaults.bws),
        source=source,
    )


def load_config(explicit: Optional[str] = None, *, cwd: Optional[Path] = None) -> Config:
    base = cwd or Path.cwd()
    required = True
    raw = explicit or os.getenv(CONFIG_ENV_VAR)
    if raw:
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = base / path
    else:
        path = base / DEFAULT_CONFIG_NAME
        required = False

    if not path.exists():
        if required:
            die(f"Config file not found: {path}")
        return Config()

    try:
        doc = load_yaml(path)
    except Exception as e:  # noqa: BLE001
        die(f"Failed to parse config YAML {path}: {e}")
    return parse_config(doc, source=path)
