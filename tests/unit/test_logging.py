"""Tests for structured logging, including services logging at INFO."""

import json
import logging
import sys
from datetime import timedelta

import pytest

from approvalflow.approvals.domain import ApprovalPolicy
from approvalflow.shared.infrastructure.logging import CustomJsonFormatter, bind_correlation_id, setup_logging

from conftest import T0, role_level


class _CurrentStdout:
    """Forwards to whatever ``sys.stdout`` is at write time.

    pytest swaps the captured stdout between the setup and call phases, so a
    handler bound to the setup-phase stream would write to a closed file.
    """

    def write(self, text):
        return sys.stdout.write(text)

    def flush(self):
        sys.stdout.flush()


@pytest.fixture
def json_logging(capsys, monkeypatch):
    """Route logging through setup_logging at INFO into the captured stdout."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    with monkeypatch.context() as patch:
        patch.setattr(sys, "stdout", _CurrentStdout())
        setup_logging("INFO", "test")
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _records(output: str):
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


class TestJsonLogging:
    def test_record_carries_correlation_id_and_masks_secrets(self):
        formatter = CustomJsonFormatter("%(name)s %(message)s", environment="test")
        record = logging.LogRecord("approvalflow", logging.INFO, __file__, 1, "Level committed", None, None)
        record.instance_id = "i-1"
        record.api_key = "hunter2"

        bind_correlation_id("req-42")
        data = json.loads(formatter.format(record))

        assert data["message"] == "Level committed"
        assert data["instance_id"] == "i-1"
        assert data["correlation_id"] == "req-42"
        assert data["environment"] == "test"
        assert data["api_key"] == "***REDACTED***"


class TestServicesLogAtInfo:
    """Service log calls must be accepted by the logging module when INFO is on."""

    async def test_policy_upsert(self, json_logging, policy_service, capsys):
        policy = ApprovalPolicy(
            id="finance",
            workspace_id="events",
            name="Finance sign-off",
            chain=[role_level(1, "FINANCE_LEAD")],
            created_at=T0,
            updated_at=T0,
        )

        await policy_service.create_or_update_policy(policy, now=T0)
        await policy_service.create_or_update_policy(policy, now=T0 + timedelta(hours=1))

        saved = [r for r in _records(capsys.readouterr().out) if r["message"] == "Approval policy saved"]
        assert [r["is_new"] for r in saved] == [True, False]

    async def test_work_item_registration(self, json_logging, work_item_service, make_item, capsys):
        await work_item_service.register_work_item(make_item(due_at=T0 + timedelta(hours=4)))

        records = _records(capsys.readouterr().out)
        assert any(r.get("item_id") == "item-1" and r.get("is_new") is True for r in records)

    async def test_approval_round_trip(self, json_logging, executor, make_policy, make_item, capsys):
        await make_policy("finance", [role_level(1, "FINANCE_LEAD")], is_default=True)
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.act(instance.id, "fin", "approve", now=T0)

        records = _records(capsys.readouterr().out)
        assert "Work item submitted for approval" in {r["message"] for r in records}
        committed = next(r for r in records if r["message"] == "Approver action committed")
        assert (committed["level"], committed["levelname"]) == (1, "INFO")
