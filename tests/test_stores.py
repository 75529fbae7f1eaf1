import base64
import json

import pytest

from aws_keyctl.config import StoreConfig
from aws_keyctl.stores import BitwardenSecretsStore, BitwardenStore, make_store
from conftest import FakeRunner

ITEM = {"id": "item-1", "name": "prod", "fields": [{"name": "AWS_ACCESS_KEY_ID", "value": "AKIAOLD", "type": 0}]}


def test_bw_requires_unlocked_vault(capsys):
    store = BitwardenStore(runner=FakeRunner([(["bw", "status"], 0, json.dumps({"status": "locked"}))]))
    with pytest.raises(SystemExit) as exc:
        store.ensure_ready()
    assert exc.value.code == 1
    err = capsys.readouterr().err
    assert "vault is locked" in err
    assert "bw unlock --raw" in err


def test_bw_unlocked_vault_passes():
    runner = FakeRunner([(["bw", "status"], 0, json.dumps({"status": "unlocked"}))])
    BitwardenStore(runner=runner).ensure_ready()
    assert runner.commands() == [["bw", "status"]]


def test_bw_missing_cli_is_reported(capsys):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    with pytest.raises(SystemExit):
        BitwardenStore(runner=missing).ensure_ready()
    assert "bw CLI not found in PATH" in capsys.readouterr().err


def test_bw_fetch_by_name():
    runner = FakeRunner([(["bw", "get", "item"], 0, json.dumps(ITEM))])
    assert BitwardenStore(runner=runner).fetch("prod") == ITEM
    assert runner.commands() == [["bw", "get", "item", "prod"]]


def test_bw_fetch_rejects_partial_name_match(capsys):
    runner = FakeRunner([(["bw", "get", "item"], 0, json.dumps({**ITEM, "name": "production-db"}))])
    with pytest.raises(SystemExit) as exc:
        BitwardenStore(runner=runner).fetch("prod")
    assert exc.value.code == 1
    assert "'production-db'" in capsys.readouterr().err


def test_bw_fetch_failure_hides_cli_output(capsys):
    runner = FakeRunner([(["bw", "get", "item"], 1, "secret leak")])
    with pytest.raises(SystemExit):
        BitwardenStore(runner=runner).fetch("prod")
    err = capsys.readouterr().err
    assert "exit code 1" in err
    assert "secret leak" not in err


def test_bw_save_encodes_item_then_syncs():
    runner = FakeRunner()
    store = BitwardenStore(runner=runner)
    store.save(ITEM)
    store.sync()

    edit, sync = runner.calls
    assert edit[0] == ["bw", "edit", "item", "item-1"]
    assert json.loads(base64.b64decode(edit[1]["input_data"])) == ITEM
    assert edit[1]["sensitive"] is True
    assert sync[0] == ["bw", "sync"]


def test_bws_requires_access_token(monkeypatch, capsys):
    monkeypatch.delenv("BWS_ACCESS_TOKEN", raising=False)
    with pytest.raises(SystemExit):
        BitwardenSecretsStore().ensure_ready()
    assert "BWS_ACCESS_TOKEN" in capsys.readouterr().err

    monkeypatch.setenv("BWS_ACCESS_TOKEN", "0.token")
    BitwardenSecretsStore().ensure_ready()


def _bws_list(*secrets):
    return FakeRunner([(["bws", "secret", "list"], 0, json.dumps(list(secrets)))])


def test_bws_fetch_filters_by_key_and_parses_value():
    runner = _bws_list(
        {"id": "a", "key": "other", "value": "{}"},
        {"id": "b", "key": "prod/aws-key", "value": json.dumps({"AWS_ACCESS_KEY_ID": "AKIAOLD"})},
    )
    secret = BitwardenSecretsStore(runner=runner).fetch("prod/aws-key")
    assert secret["id"] == "b"
    assert secret["value"] == {"AWS_ACCESS_KEY_ID": "AKIAOLD"}
    assert runner.commands()[0] == ["bws", "secret", "list", "--output", "json", "--color", "no"]


def test_bws_fetch_empty_value_starts_a_new_object():
    secret = BitwardenSecretsStore(runner=_bws_list({"id": "b", "key": "k", "value": ""})).fetch("k")
    assert secret["value"] == {}


@pytest.mark.parametrize(
    "secrets,message",
    [
        ([], "not found"),
        ([{"id": "a", "key": "k", "value": "{}"}, {"id": "b", "key": "k", "value": "{}"}], "ambiguous"),
        ([{"id": "a", "key": "k", "value": "plain text"}], "not JSON"),
        ([{"id": "a", "key": "k", "value": "[1, 2]"}], "must be a JSON object"),
    ],
)
def test_bws_fetch_errors(secrets, message, capsys):
    with pytest.raises(SystemExit):
        BitwardenSecretsStore(runner=_bws_list(*secrets)).fetch("k")
    assert message in capsys.readouterr().err


def test_bws_save_replaces_whole_value():
    runner = FakeRunner()
    store = BitwardenSecretsStore(runner=runner)
    store.save({"id": "b", "key": "k", "value": {"B": "2", "A": "1"}})
    store.sync()

    assert len(runner.calls) == 1
    cmd, kwargs = runner.calls[0]
    assert cmd[:4] == ["bws", "secret", "edit", "b"]
    assert json.loads(cmd[cmd.index("--value") + 1]) == {"A": "1", "B": "2"}
    assert kwargs["sensitive"] is True


def test_apply_updates_does_not_mutate_input():
    store = BitwardenStore()
    updated = store.apply_updates(ITEM, {"AWS_ACCESS_KEY_ID": "AKIANEW"})
    assert ITEM["fields"][0]["value"] == "AKIAOLD"
    assert updated["fields"][0]["value"] == "AKIANEW"


def test_make_store_uses_config():
    store = make_store("bws", StoreConfig(bin="/opt/bws", name_template="{workspace}-aws"))
    assert isinstance(store, BitwardenSecretsStore)
    assert store.tool == "/opt/bws"
    assert store.name_template == "{workspace}-aws"
