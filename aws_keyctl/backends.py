"""Adapters for the external tools the key workflows drive.

Each capability is a narrow interface so the workflows never care which CLI
sits behind it:

  - ProvisioningBackend: terraform (apply/destroy/output/workspace).
  - IdentityProvider: aws CLI (sts get-caller-identity, iam update-access-key).
  - Decryptor: keybase pgp decrypt, or gpg --decrypt.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .common import Runner, as_text, die, run
from .config import Config

IDENTITY_FIELDS = ("account_id", "arn", "user_id")


@dataclass(frozen=True)
class CallerIdentity:
    account_id: str
    arn: str
    user_id: str

    @classmethod
    def from_mapping(cls, data: Any, *, keys: Sequence[str], source: str) -> "CallerIdentity":
        if not isinstance(data, dict):
            die(f"{source} returned unexpected JSON shape (expected an object)")
        values: List[str] = []
        for key in keys:
            value = data.get(key)
            if not isinstance(value, str) or not value:
                die(f"{source} does not contain string field {key!r}")
            values.append(value)
        return cls(*values)

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)

    def first_mismatch(self, other: "CallerIdentity") -> Optional[Tuple[str, str, str]]:
        for name in IDENTITY_FIELDS:
            mine = getattr(self, name)
            theirs = getattr(other, name)
            if mine != theirs:
                return name, mine, theirs
        return None


class ProvisioningBackend(Protocol):
    def apply(self) -> None: ...

    def destroy(self) -> None: ...

    def output(self, name: str) -> str: ...

    def output_json(self, name: str) -> Any: ...

    def workspace(self) -> str: ...


class IdentityProvider(Protocol):
    def caller_identity(self) -> CallerIdentity: ...

    def update_access_key(self, *, access_key_id: str, status: str, user_name: str) -> None: ...


class Decryptor(Protocol):
    def decrypt(self, ciphertext: bytes) -> str: ...


class Terraform:
    def __init__(self, bin: str = "terraform", chdir: Optional[str] = None, runner: Runner = run) -> None:
        self.bin = bin
        self.chdir = chdir
        self.runner = runner

    def _cmd(self, *args: str) -> List[str]:
        cmd = [self.bin]
        if self.chdir:
            cmd.append(f"-chdir={self.chdir}")
        cmd.extend(args)
        return cmd

    def apply(self) -> None:
        self.runner(self._cmd("apply", "-auto-approve"), capture=False, action="terraform apply")

    def destroy(self) -> None:
        self.runner(self._cmd("destroy", "-auto-approve"), capture=False, action="terraform destroy")

    def output(self, name: str) -> str:
        res = self.runner(self._cmd("output", "-raw", name), action=f"terraform output {name}")
        return as_text(res.stdout).strip()

    def output_json(self, name: str) -> Any:
        res = self.runner(self._cmd("output", "-json", name), action=f"terraform output {name}")
        try:
            return json.loads(as_text(res.stdout))
        except ValueError as e:
            die(f"terraform output {name} returned non-JSON output: {e}")
            return None  # unreachable

    def workspace(self) -> str:
        res = self.runner(self._cmd("workspace", "show"), action="terraform workspace show")
        name = as_text(res.stdout).strip()
        if not name:
            die("terraform workspace show returned an empty workspace name")
        return name


class AwsCli:
    def __init__(self, bin: str = "aws", profile: Optional[str] = None, runner: Runner = run) -> None:
        self.bin = bin
        self.profile = profile
        self.runner = runner

    def _cmd(self, *args: str) -> List[str]:
        cmd = [self.bin, *args, "--output", "json"]
        if self.profile:
            cmd.extend(["--profile", self.profile])
        return cmd

    def caller_identity(self) -> CallerIdentity:
        res = self.runner(self._cmd("sts", "get-caller-identity"), action="aws sts get-caller-identity")
        try:
            data = json.loads(as_text(res.stdout))
        except ValueError as e:
            die(f"aws sts get-caller-identity returned non-JSON output: {e}")
            data = None  # unreachable
        return CallerIdentity.from_mapping(data, keys=("Account", "Arn", "UserId"), source="aws sts get-caller-identity")

    def update_access_key(self, *, access_key_id: str, status: str, user_name: str) -> None:
        cmd = self._cmd(
            "iam",
            "update-access-key",
            "--access-key-id",
            access_key_id,
            "--status",
            status,
            "--user-name",
            user_name,
        )
        self.runner(cmd, action="aws iam update-access-key")


class KeybaseDecryptor:
    def __init__(self, bin: str = "keybase", runner: Runner = run) -> None:
        self.bin = bin
        self.runner = runner

    def decrypt(self, ciphertext: bytes) -> str:
        res = self.runner([self.bin, "pgp", "decrypt"], input_data=ciphertext, action="keybase pgp decrypt")
        # Match shell command substitution: trailing newlines are not part of the secret.
        return as_text(res.stdout).rstrip("\n")


class GpgDecryptor:
    def __init__(self, bin: str = "gpg", runner: Runner = run) -> None:
        self.bin = bin
        self.runner = runner

    def decrypt(self, ciphertext: bytes) -> str:
        res = self.runner([self.bin, "--decrypt", "--quiet", "--batch"], input_data=ciphertext, action="gpg --decrypt")
        return as_text(res.stdout).rstrip("\n")


def make_decryptor(config: Config, runner: Runner = run) -> Decryptor:
    if config.decryptor == "gpg":
        return GpgDecryptor(bin=config.decryptor_tool, runner=runner)
    if config.decryptor == "keybase":
        return KeybaseDecryptor(bin=config.decryptor_tool, runner=runner)
    die(f"Unsupported decryptor {config.decryptor!r} (supported: keybase, gpg)")
    return KeybaseDecryptor()  # unreachable


def identity_from_output(data: Mapping[str, Any]) -> CallerIdentity:
    return CallerIdentity.from_mapping(data, keys=IDENTITY_FIELDS, source="terraform output aws_caller_identity")
