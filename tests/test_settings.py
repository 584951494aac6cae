from __future__ import annotations

import pytest
from pydantic import ValidationError

from batch_ingest_api.app.settings import Settings

from conftest import make_settings


def test_defaults_keep_budgets_nested() -> None:
    settings = Settings(_env_file=None)

    assert settings.ai_timeout_s <= settings.resource_timeout_s
    assert settings.resource_timeout_s <= settings.max_processing_time_s
    assert settings.max_processing_time_s < settings.host_timeout_s
    assert settings.chain_mode == "worker"
    assert settings.partial_timeout_policy == "requeue"


def test_env_prefix_is_applied(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BATCH_INGEST_BATCH_SIZE", "4")
    monkeypatch.setenv("BATCH_INGEST_CHAIN_MODE", "http")
    monkeypatch.setenv("BATCH_INGEST_INTERNAL_TOKEN", "s3cret")

    settings = Settings(_env_file=None)

    assert settings.batch_size == 4
    assert settings.chain_mode == "http"
    assert settings.internal_token == "s3cret"


def test_http_chain_requires_internal_token() -> None:
    with pytest.raises(ValidationError, match="internal_token is required"):
        make_settings(chain_mode="http", internal_token="")


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_processing_time_s": 60.0, "host_timeout_s": 60.0},
        {"resource_timeout_s": 50.0},
        {"ai_timeout_s": 6.0},
    ],
)
def test_inconsistent_budgets_are_rejected(overrides: dict[str, float]) -> None:
    with pytest.raises(ValidationError):
        make_settings(**overrides)


@pytest.mark.parametrize("batch_size", [0, 11])
def test_batch_size_bounds(batch_size: int) -> None:
    with pytest.raises(ValidationError):
        make_settings(batch_size=batch_size)


def test_unknown_policy_is_rejected() -> None:
    with pytest.raises(ValidationError):
        make_settings(partial_timeout_policy="drop")
