"""Startup wiring: which shipment data source the API is allowed to serve from."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
from fastapi import FastAPI

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import report_agent.main as main_module  # noqa: E402
from report_agent.core.config import Settings  # noqa: E402
from report_agent.services.shipment_dataset import DemoShipmentDataset  # noqa: E402


def _settings(tmp_path, mode: str) -> Settings:
    return Settings(app_mode=mode, state_db_path=str(tmp_path / "wiring.db"), openai_api_key="")


def test_demo_mode_uses_the_seeded_dataset(tmp_path):
    dataset = main_module.resolve_data_service(_settings(tmp_path, "demo"))
    assert isinstance(dataset, DemoShipmentDataset)


def test_production_mode_refuses_the_demo_dataset(tmp_path):
    with pytest.raises(RuntimeError, match="APP_MODE=production"):
        main_module.resolve_data_service(_settings(tmp_path, "production"))


def test_injected_service_wins_in_any_mode(tmp_path):
    injected = DemoShipmentDataset(seed=3, rows_per_customer=10)
    assert main_module.resolve_data_service(_settings(tmp_path, "production"), injected) is injected


def test_production_startup_fails_without_a_data_service(tmp_path, monkeypatch):
    monkeypatch.setattr(main_module, "get_settings", lambda: _settings(tmp_path, "production"))

    async def start() -> None:
        async with main_module.lifespan(FastAPI()):
            pass

    with pytest.raises(RuntimeError):
        asyncio.run(start())


def test_production_startup_serves_from_the_injected_service(tmp_path, monkeypatch):
    monkeypatch.setattr(main_module, "get_settings", lambda: _settings(tmp_path, "production"))
    app = FastAPI()
    app.state.data_service = DemoShipmentDataset(seed=5, rows_per_customer=10)

    async def start() -> None:
        async with main_module.lifespan(app):
            assert app.state.gatekeeper.data is app.state.data_service

    asyncio.run(start())
