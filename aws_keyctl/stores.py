"""Secret-store adapters for syncing a rotated key.

Two Bitwarden flavours with different record models:

  - bw  (Password Manager CLI): an item carries a list of named custom fields;
    updates patch matching fields one by one, then `bw sync` pushes the edit.
  - bws (Secrets Manager CLI): a secret carries a single string value that holds
    a JSON object; updates assign keys and replace the whole value.
"""

from __future__ import annotations

import base64
import copy
import json
import os
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .common import Runner, as_text, die, run
from .config import StoreConfig

FIELD_TYPE_TEXT = 0
FIELD_TYPE_HIDDEN = 1


class SecretStore(Protocol):
    label: str
    tool: str
    name_template: str

    def ensure_ready(self) -> None: ...

    def fetch(self, name: str) -> Dict[str, Any]: ...

    def apply_updates(self, record: Mapping[str, Any], updates: Mapping[str, str], *, hidden: Sequence[str] = ()) -> Dict[str, Any]: ...

    def save(self, record: Mapping[str, Any]) -> None: ...

    def sync(self) -> None: ...


def _run_json(runner: Runner, cmd: Sequence[str]) -> Tuple[Optional[Any], Optional[str]]:
    try:
        res = runner(list(cmd), check=False)
    except FileNotFoundError:
        return None, f"{cmd[0]} CLI not found in PATH"
    except Exception as e:  # noqa: BLE001
        return None, f"{cmd[0]} command failed to start: {e}"

    if res.returncode != 0:
        # Never include stdout/stderr to avoid accidental leaks on CLI errors.
        return None, f"{cmd[0]} command failed (exit code {res.returncode}): {' '.join(cmd[:3])} ..."

    try:
        return json.loads(as_text(res.stdout)), None
    except Exception as e:  # noqa: BLE001
        return None, f"{cmd[0]} returned non-JSON output: {e}"


class BitwardenStore:
    label = "bw"

    def __init__(self, bin: str = "bw", name_template: str = "{workspace}", runner: Runner = run) -> None:
        self.tool = bin
        self.name_template = name_template
        self.runner = runner

    def ensure_ready(self) -> None:
        data, err = _run_json(self.runner, [self.tool, "status"])
        if err:
            die(err)
        status = data.get("status") if isinstance(data, dict) else None
        if status != "unlocked":
            die(
                f"Bitwarden vault is {status or 'unavailable'}; run `bw login` if needed, then "
                "`export BW_SESSION=\"$(bw unlock --raw)\"`"
            )

    def fetch(self, name: str) -> Dict[str, Any]:
        data, err = _run_json(self.runner, [self.tool, "get", "item", name])
        if err:
            die(f"{err} (item {name!r} missing or ambiguous?)")
        if not isinstance(data, dict) or not isinstance(data.get("id"), str):
            die(f"bw get item {name!r} returned unexpected JSON shape")
        if data.get("name") != name:
            die(f"bw get item {name!r} matched item {data.get('name')!r}; refusing to edit a partial match")
        return data

    def apply_updates(self, record: Mapping[str, Any], updates: Mapping[str, str], *, hidden: Sequence[str] = ()) -> Dict[str, Any]:
        updated = copy.deepcopy(dict(record))
        fields = updated.get("fields")
        if not isinstance(fields, list):
            fields = []
            updated["fields"] = fields
        for name, value in updates.items():
            for f in fields:
                if isinstance(f, dict) and f.get("name") == name:
                    f["value"] = value
                    break
            else:
                fields.append(
                    {
                        "name": name,
                        "value": value,
                        "type": FIELD_TYPE_HIDDEN if name in hidden else FIELD_TYPE_TEXT,
                        "linkedId": None,
                    }
                )
        return updated

    def save(self, record: Mapping[str, Any]) -> None:
        encoded = base64.b64encode(json.dumps(record).encode("utf-8")).decode("ascii")
        # Encoded item goes on stdin so the secret never shows up in the process table.
        self.runner([self.tool, "edit", "item", str(record["id"])], input_data=encoded, sensitive=True, action="bw edit item")

    def sync(self) -> None:
        self.runner([self.tool, "sync"], action="bw sync")


class BitwardenSecretsStore:
    label = "bws"

    def __init__(self, bin: str = "bws", name_template: str = "{workspace}/aws-key", runner: Runner = run) -> None:
        self.tool = bin
        self.name_template = name_template
        self.runner = runner

    def _cmd(self, *args: str) -> List[str]:
        return [self.tool, *args, "--output", "json", "--color", "no"]

    def ensure_ready(self) -> None:
        if not str(os.getenv("BWS_ACCESS_TOKEN") or "").strip():
            die("bws requires BWS_ACCESS_TOKEN in the environment (create a machine account access token)")

    def fetch(self, name: str) -> Dict[str, Any]:
        data, err = _run_json(self.runner, self._cmd("secret", "list"))
        if err:
            die(err)
        if not isinstance(data, list):
            die("bws secret list returned unexpected JSON shape")

        matches = [s for s in data if isinstance(s, dict) and s.get("key") == name]
        if not matches:
            die(f"bws secret not found: {name!r}")
        if len(matches) > 1:
            die(f"bws secret key is ambiguous ({len(matches)} secrets named {name!r})")

        secret = dict(matches[0])
        if not isinstance(secret.get("id"), str):
            die(f"bws secret {name!r} has no id")
        raw = secret.get("value")
        try:
            value = json.loads(raw) if isinstance(raw, str) and raw.strip() else {}
        except ValueError:
            die(f"bws secret {name!r} value is not JSON; expected a JSON object")
            value = None  # unreachable
        if not isinstance(value, dict):
            die(f"bws secret {name!r} value must be a JSON object")
        secret["value"] = value
        return secret

    def apply_updates(self, record: Mapping[str, Any], updates: Mapping[str, str], *, hidden: Sequence[str] = ()) -> Dict[str, Any]:
        updated = copy.deepcopy(dict(record))
        value = updated["value"]
        for key, new in updates.items():
            value[key] = new
        return updated

    def save(self, record: Mapping[str, Any]) -> None:
        value = json.dumps(record["value"], indent=2, sort_keys=True)
        cmd = self._cmd("secret", "edit", str(record["id"]), "--value", value)
        self.runner(cmd, sensitive=True, action="bws secret edit")

    def sync(self) -> None:
        # Secrets Manager edits are server-side; there is no separate sync step.
        return None


def make_store(kind: str, cfg: StoreConfig, runner: Runner = run) -> SecretStore:
    if kind == "bw":
        return BitwardenStore(bin=cfg.bin, name_template=cfg.name_template, runner=runner)
    if kind == "bws":
        return BitwardenSecretsStore(bin=cfg.bin, name_template=cfg.name_template, runner=runner)
    die(f"Unsupported secret store {kind!r} (supported: bw, bws)")
    return BitwardenStore()  # unreachable
