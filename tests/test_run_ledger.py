"""Tests for the hash-chained Run Ledger."""

from datetime import datetime

from twoloop_kernel.audit.run_ledger import RunLedger
from twoloop_kernel.models.convergence import ConvergenceRun, RunError, RunStatus
from twoloop_kernel.models.task import TaskType


def _make_run(run_id: str, tenant_id: str = "tenant_a", status: RunStatus = RunStatus.CONVERGED):
    return ConvergenceRun(
        id=run_id,
        tenant_id=tenant_id,
        task_type=TaskType.SEND_EMAIL,
        status=status,
        converged=status == RunStatus.CONVERGED,
        final_score=0.85,
        error=RunError(code="TIMEOUT", message="Run timed out", recoverable=True)
        if status == RunStatus.ERROR else None,
        started_at=datetime.utcnow(),
        completed_at=datetime.utcnow(),
    )


class TestRunLedger:
    def test_append_and_get(self):
        ledger = RunLedger()
        signature = ledger.append(_make_run("run_1"))

        assert len(signature) == 64
        stored = ledger.get("run_1")
        assert stored.final_score == 0.85
        assert ledger.get("run_missing") is None

    def test_queries(self):
        ledger = RunLedger()
        ledger.append(_make_run("run_1"))
        ledger.append(_make_run("run_2", tenant_id="tenant_b"))
        ledger.append(_make_run("run_3", status=RunStatus.ERROR))

        assert [r.id for r in ledger.query_by_tenant("tenant_a")] == ["run_1", "run_3"]
        assert [r.id for r in ledger.query_by_status(RunStatus.ERROR)] == ["run_3"]
        assert [r.id for r in ledger.query_recent(limit=2)] == ["run_2", "run_3"]
        assert ledger.count() == 3

    def test_chain_verifies(self):
        ledger = RunLedger()
        for n in range(4):
            ledger.append(_make_run(f"run_{n}"))
        assert ledger.verify_chain_integrity()

    def test_empty_chain_verifies(self):
        assert RunLedger().verify_chain_integrity()

    def test_tampering_detected(self):
        ledger = RunLedger()
        ledger.append(_make_run("run_1"))
        ledger.append(_make_run("run_2"))

        tampered = _make_run("run_1").model_copy(update={"final_score": 0.99})
        ledger._conn.execute(
            "UPDATE convergence_runs SET record_json = ? WHERE id = ?",
            (tampered.model_dump_json(), "run_1"),
        )

        assert not ledger.verify_chain_integrity()

    def test_persists_to_file(self, tmp_path):
        path = str(tmp_path / "runs.db")
        ledger = RunLedger(db_path=path)
        ledger.append(_make_run("run_1"))
        ledger.close()

        reopened = RunLedger(db_path=path)
        assert reopened.get("run_1") is not None
        assert reopened.verify_chain_integrity()
