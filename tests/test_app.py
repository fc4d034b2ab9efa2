"""Composition-root and batch CLI tests (simulation mode, in-memory ledger)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from src import cli
from src.app import create_app
from src.config.settings import Settings
from src.ledger.memory import InMemoryLedger


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for field in Settings.model_fields.values():
        if field.alias:
            monkeypatch.delenv(field.alias, raising=False)


def test_create_app_without_database_uses_memory_ledger() -> None:
    app = create_app(Settings(_env_file=None))
    assert isinstance(app.ledger, InMemoryLedger)
    assert app.pool is None
    assert app.coordinator.features.signer_chains == app.settings.signer_chains()


def test_create_app_builds_independent_graphs() -> None:
    settings = Settings(_env_file=None)
    first = create_app(settings)
    second = create_app(settings)
    assert first.ledger is not second.ledger
    assert first.coordinator.policy is not second.coordinator.policy


@pytest.mark.asyncio
async def test_simulated_swap_is_confirmed_and_audited() -> None:
    app = create_app(Settings(_env_file=None))
    await app.start()
    try:
        result = await app.coordinator.run_intent("swap 1000 usdc to weth", session_id="t")
    finally:
        await app.stop()

    assert result.ok
    assert result.status == "confirmed"
    assert app.audit.signing_summary().backend_signed == 1


@pytest.mark.asyncio
async def test_cli_prints_one_json_line_per_intent(capsys: pytest.CaptureFixture[str]) -> None:
    code = await cli.run(["long btc 20x", "long eth 10x on drift"])

    lines = capsys.readouterr().out.strip().splitlines()
    assert code == 1
    assert len(lines) == 2
    first, second = (json.loads(line) for line in lines)
    assert first["status"] == "confirmed"
    assert second["error"]["code"] == "VENUE_NOT_IMPLEMENTED"


@pytest.mark.asyncio
async def test_cli_rejects_negative_delay() -> None:
    with pytest.raises(SystemExit):
        await cli.run(["--delay", "-1", "long btc 20x"])


@pytest.mark.asyncio
async def test_cli_plan_only_uses_loaded_settings(
        monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(
        "src.cli.load_settings", lambda: Settings(_env_file=None, DEMO_PERP_ADAPTER_ADDRESS="0xadapter")
    )

    code = await cli.run(["--plan-only", "long btc 20x"])

    payload = json.loads(capsys.readouterr().out)
    assert code == 0
    assert payload["status"] == "routed"
    assert payload["metadata"]["route"]["execution_type"] == "real"
    assert payload["metadata"]["route"]["adapter"] == "0xadapter"
