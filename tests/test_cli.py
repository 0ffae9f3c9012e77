import json
from pathlib import Path

import pytest

from helpers import FakeTransport, word

from solidity_storage_tool.cli import build_parser, main as cli_main
from solidity_storage_tool.core.models import ClassStereotype
from solidity_storage_tool.services import storage
from solidity_storage_tool.services.slot_values import SlotValueClient


@pytest.fixture
def model_path(builder, tmp_path: Path) -> str:
    token = builder.add(
        "Token",
        attributes=[("supply", "uint256"), ("decimals", "uint8"), ("state", "State")],
    )
    builder.add("State", ClassStereotype.ENUM, declared_in=token, enum_values=["Open", "Closed"])
    builder.add("Math", ClassStereotype.LIBRARY)
    path = tmp_path / "model.json"
    path.write_text(json.dumps(builder.model.as_dict()), encoding="utf-8")
    return str(path)


def test_cli_lists_contracts(model_path: str, capsys: pytest.CaptureFixture[str]):
    exit_code = cli_main(["--project", model_path, "--engine", "model", "contracts"])

    assert exit_code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["contracts"] == ["Token", "Math"]
    assert output["metadata"]["engine"] == "model"


def test_cli_storage_layout(model_path: str, capsys: pytest.CaptureFixture[str]):
    exit_code = cli_main(["--project", model_path, "--engine", "model", "storage", "--contract", "Token"])

    assert exit_code == 0
    output = json.loads(capsys.readouterr().out)
    variables = output["sections"][0]["variables"]
    assert [(v["name"], v["from_slot"], v["byte_offset"]) for v in variables] == [
        ("supply", 0, 0),
        ("decimals", 1, 0),
        ("state", 1, 1),
    ]


def test_cli_storage_values(model_path: str, capsys, monkeypatch):
    transport = FakeTransport({0: word(10**6), 1: word(0x0112)})
    monkeypatch.setattr(storage, "SlotValueClient", lambda url: SlotValueClient(url, transport=transport))

    exit_code = cli_main(
        [
            "--project",
            model_path,
            "--engine",
            "model",
            "storage",
            "--contract",
            "Token",
            "--data",
            "--address",
            "0xBa69e6FC7Df49a3b75b565068Fb91ff2d9d91780",
            "--block",
            "100",
        ]
    )

    assert exit_code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["block"] == 100
    values = [v["value"] for v in output["sections"][0]["variables"]]
    assert values == ["1,000,000", "18", "Closed"]
    assert transport.calls[0][0]["params"][2] == "0x64"


def test_cli_data_requires_address(model_path: str, capsys: pytest.CaptureFixture[str]):
    exit_code = cli_main(["--project", model_path, "--engine", "model", "storage", "--contract", "Token", "--data"])

    assert exit_code == 1
    assert "Error: --data requires a contract --address" in capsys.readouterr().err


def test_cli_reports_missing_contract(model_path: str, capsys: pytest.CaptureFixture[str]):
    exit_code = cli_main(["--project", model_path, "--engine", "model", "storage", "--contract", "Nope"])

    assert exit_code == 1
    assert 'Failed to find contract with name "Nope"' in capsys.readouterr().err


def test_node_url_defaults_from_environment(monkeypatch):
    monkeypatch.setenv("NODE_URL", "http://archive.test:8545")

    args = build_parser().parse_args(["--project", ".", "storage", "--contract", "Token"])

    assert args.url == "http://archive.test:8545"
    assert args.max_array_length == 256
    assert args.block == "latest"
