from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskpilot.config import (
    AutoApprovalSettings,
    ContextSettings,
    ModelSettings,
    Settings,
)

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Configuration"),
]


def test_from_env_reads_taskpilot_variables(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKPILOT_MODEL_ID", "gpt-5-mini")
    monkeypatch.setenv("TASKPILOT_AUTO_APPROVE", "yes")
    monkeypatch.setenv("TASKPILOT_AUTO_APPROVE_MAX_REQUESTS", "7")
    monkeypatch.setenv("TASKPILOT_AUTO_CONDENSE_THRESHOLD", "0.5")
    monkeypatch.setenv("TASKPILOT_NEXT_GEN_MODEL_PREFIXES", "gpt-5, gpt-5 ,claude")
    monkeypatch.setenv("TASKPILOT_STREAM_THROTTLE_MS", "0")

    settings = Settings.from_env(db_path=tmp_path / "db.sqlite")

    assert settings.db_path == tmp_path / "db.sqlite"
    assert settings.model.model_id == "gpt-5-mini"
    assert settings.model.next_gen_model_prefixes == ("gpt-5", "claude")
    assert settings.auto_approval.enabled is True
    assert settings.auto_approval.max_requests == 7
    assert settings.context.auto_condense_threshold == 0.5
    assert settings.stream.throttle_ms == 0
    settings.validate()


def test_defaults_keep_stream_and_checkpoint_timeouts(monkeypatch) -> None:
    for name in (
        "TASKPILOT_STREAM_THROTTLE_MS",
        "TASKPILOT_TOOL_READY_TIMEOUT_SECONDS",
        "TASKPILOT_CHECKPOINT_INIT_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.stream.throttle_ms == 50
    assert settings.stream.tool_ready_timeout_seconds == 10.0
    assert settings.checkpoints.init_timeout_seconds == 15.0


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("TASKPILOT_AUTO_APPROVE", "maybe")
    with pytest.raises(ValueError, match="TASKPILOT_AUTO_APPROVE"):
        Settings.from_env()


def test_validate_rejects_out_of_range_values() -> None:
    with pytest.raises(ValueError, match="AUTO_APPROVE_MAX_REQUESTS"):
        Settings(auto_approval=AutoApprovalSettings(max_requests=0)).validate()
    with pytest.raises(ValueError, match="AUTO_CONDENSE_THRESHOLD"):
        Settings(context=ContextSettings(auto_condense_threshold=1.5)).validate()


def test_validate_for_remote_backend_requires_url_and_key() -> None:
    with pytest.raises(ValueError, match="Invalid TASKPILOT_API_BASE_URL"):
        settings = Settings(model=ModelSettings(api_base_url="ftp://x", api_key="k"))
        settings.validate_for_remote_backend()
    with pytest.raises(ValueError, match="TASKPILOT_API_KEY"):
        Settings(model=ModelSettings(api_key="")).validate_for_remote_backend()

    Settings(model=ModelSettings(api_key="secret")).validate_for_remote_backend()
