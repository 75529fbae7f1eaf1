import base64
import logging
import subprocess
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from aws_keyctl.backends import CallerIdentity
from aws_keyctl.common import die
from aws_keyctl.workflows import KeyCtx

RECORDED_IDENTITY = {
    "account_id": "123456789012",
    "arn": "arn:aws:iam::123456789012:user/ops",
    "id": "123456789012",
    "user_id": "AIDAEXAMPLEUSERID",
}
LIVE_IDENTITY = CallerIdentity(
    account_id="123456789012",
    arn="arn:aws:iam::123456789012:user/ops",
    user_id="AIDAEXAMPLEUSERID",
)
CIPHERTEXT = b"-----BEGIN PGP MESSAGE----- fake"
PLAINTEXT_SECRET = "wJalrXUtnFEMI/K7MDENG/bPxRfiCYEXAMPLEKEY"


@pytest.fixture(autouse=True)
def _reset_logger():
    logger = logging.getLogger("aws_keyctl")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.INFO)
    yield


class FakeTerraform:
    def __init__(
        self,
        outputs: Optional[Dict[str, str]] = None,
        identity: Any = None,
        workspace: str = "prod",
        fail_apply: bool = False,
    ) -> None:
        self.outputs = dict(
            outputs
            if outputs is not None
            else {
                "aws_user_name": "ci-deployer",
                "aws_access_key_id": "AKIAOLDKEY",
                "encrypted_secret": base64.b64encode(CIPHERTEXT).decode("ascii"),
            }
        )
        self.identity = dict(RECORDED_IDENTITY) if identity is None else identity
        self._workspace = workspace
        self.fail_apply = fail_apply
        self.calls: List[Any] = []

    def apply(self) -> None:
        self.calls.append("apply")
        if self.fail_apply:
            die("terraform apply failed (exit code 1)")
        self.outputs["aws_access_key_id"] = "AKIANEWKEY"

    def destroy(self) -> None:
        self.calls.append("destroy")

    def output(self, name: str) -> str:
        self.calls.append(("output", name))
        return self.outputs.get(name, "")

    def output_json(self, name: str) -> Any:
        self.calls.append(("output_json", name))
        return self.identity

    def workspace(self) -> str:
        self.calls.append("workspace")
        return self._workspace


class FakeAws:
    def __init__(self, identity: CallerIdentity = LIVE_IDENTITY) -> None:
        self.identity = identity
        self.updates: List[Dict[str, str]] = []

    def caller_identity(self) -> CallerIdentity:
        return self.identity

    def update_access_key(self, *, access_key_id: str, status: str, user_name: str) -> None:
        self.updates.append({"access_key_id": access_key_id, "status": status, "user_name": user_name})


class FakeDecryptor:
    def __init__(self, plaintext: str = PLAINTEXT_SECRET) -> None:
        self.plaintext = plaintext
        self.seen: List[bytes] = []

    def decrypt(self, ciphertext: bytes) -> str:
        self.seen.append(ciphertext)
        return self.plaintext


class Answers:
    """Scripted operator replies for the confirmation gate."""

    def __init__(self, *replies: bool) -> None:
        self.replies = list(replies)
        self.prompts: List[str] = []

    def __call__(self, prompt: str, default: Optional[str] = None) -> bool:
        self.prompts.append(prompt)
        return self.replies.pop(0)


class FakeRunner:
    """Stands in for `common.run`; matches responses by command prefix."""

    def __init__(self, responses: Sequence[Tuple[Sequence[str], int, str]] = ()) -> None:
        self.responses = [(list(prefix), rc, stdout) for prefix, rc, stdout in responses]
        self.calls: List[Tuple[List[str], Dict[str, Any]]] = []

    def __call__(self, cmd: Sequence[str], **kwargs: Any) -> "subprocess.CompletedProcess[str]":
        cmd = list(cmd)
        self.calls.append((cmd, kwargs))
        rc, stdout = 0, ""
        for prefix, r, out in self.responses:
            if cmd[: len(prefix)] == prefix:
                rc, stdout = r, out
                break
        if kwargs.get("check", True) and rc != 0:
            die(f"{' '.join(cmd[:3])} failed (exit code {rc})")
        return subprocess.CompletedProcess(cmd, rc, stdout, "")

    def commands(self) -> List[List[str]]:
        return [cmd for cmd, _ in self.calls]


@pytest.fixture
def terraform():
    return FakeTerraform()


@pytest.fixture
def aws():
    return FakeAws()


@pytest.fixture
def decryptor():
    return FakeDecryptor()


@pytest.fixture
def make_ctx(terraform, aws, decryptor, capsys):
    def _make(*replies: bool, **overrides: Any) -> KeyCtx:
        import sys

        return KeyCtx(
            provisioner=overrides.get("provisioner", terraform),
            identity=overrides.get("identity", aws),
            decryptor=overrides.get("decryptor", decryptor),
            ask=Answers(*replies),
            out=sys.stdout,
        )

    return _make
