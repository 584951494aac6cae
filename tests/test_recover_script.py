from __future__ import annotations

import importlib.util
from pathlib import Path
from types import ModuleType
from typing import Any

import pytest

from batch_ingest_api.app.models import Caller, SubmitBatchRequest
from batch_ingest_api.app.submitter import TaskSubmitter

from conftest import RecordingChain

SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "recover_chains.py"


def _load_script() -> ModuleType:
    spec = importlib.util.spec_from_file_location("recover_chains", SCRIPT_PATH)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_parse_args_defaults() -> None:
    args = _load_script()._parse_args([])

    assert args.task_uuid is None
    assert args.chain_mode == "inline"
    assert args.dead_letters == 0


def test_recover_single_task_and_report_dead_letters(services: Any) -> None:
    script = _load_script()
    chain = RecordingChain(services.store)
    submitter = TaskSubmitter(store=services.store, logs=services.logs, chain=chain)
    response = submitter.submit(
        SubmitBatchRequest(
            resources=[
                {"name": "One", "link": "https://example.com/1"},
                {"name": "Two", "link": "https://example.com/2"},
            ]
        ),
        Caller(user_id="admin-1", role="admin"),
    )
    services.store.record_dead_letter({"resource_uuid": "r1", "stage": "score"})

    report = script.recover(
        settings=services.settings,
        task_uuid=response.task_uuid,
        dead_letters=5,
        services=services,
    )

    assert [action["action"] for action in report["actions"]] == ["retriggered"]
    assert report["dead_letters"] == [{"resource_uuid": "r1", "stage": "score"}]


def test_sweep_with_nothing_active(services: Any) -> None:
    report = _load_script().recover(settings=services.settings, services=services)

    assert report == {"actions": []}


def test_parse_args_rejects_unknown_mode() -> None:
    with pytest.raises(SystemExit):
        _load_script()._parse_args(["--chain-mode", "cron"])
