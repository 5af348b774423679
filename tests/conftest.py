from __future__ import annotations

import importlib
import os
import sys
from pathlib import Path
from typing import Dict

import pytest
from fastapi.testclient import TestClient

import container_config
import container_stack
from tests.dummy_container import (
    BrokenContainer,
    DummyContainer,
    NoAddressContainer,
    SlowContainer,
    SlowStopContainer,
)


def load_core(config: Dict[str, str]) -> tuple[TestClient, object]:
    cfg_path = Path(config["config_path"])
    os.environ["STACK_CONFIG_FILE"] = str(cfg_path)
    if "stack_control_core" in sys.modules:
        del sys.modules["stack_control_core"]
    core = importlib.import_module("stack_control_core")
    client = TestClient(core.app)
    return client, core


@pytest.fixture(autouse=True)
def dummy_engines():
    container_stack.register_engine("dummy", DummyContainer)
    container_stack.register_engine("slow", SlowContainer)
    container_stack.register_engine("broken", BrokenContainer)
    container_stack.register_engine("noaddr", NoAddressContainer)
    container_stack.register_engine("slowstop", SlowStopContainer)
    yield


@pytest.fixture
def fast_timings(monkeypatch):
    monkeypatch.setattr(container_config, "DEFAULT_START_WAIT", 0.5)
    monkeypatch.setattr(container_config, "PROCESS_EXIT_CHECK_INTERVAL", 0.01)
    monkeypatch.setattr(container_config, "MONITOR_INTERVAL", 0.05)
    monkeypatch.setattr(container_config, "RESTART_CHECK_INTERVAL", 0.01)
