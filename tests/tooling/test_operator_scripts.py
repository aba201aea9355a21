"""
Operator scripts: audit chain verification and workflow approval.
"""

import json
import shutil

import pytest
from sqlalchemy import text

from govflow_config import DEFAULT_SETS_DIR, default_registry
from govflow_config.integrity import read_pinned_fingerprints
from govflow_config.loader import compute_checksum, load_yaml_file, normalize_raw
from govflow_kernel.db.triggers import (
    install_immutability_triggers,
    uninstall_immutability_triggers,
)
from govflow_kernel.exceptions import WorkflowChecksumMismatchError
from scripts import approve_workflow, verify_audit_chain


class TestVerifyAuditChain:

    def test_intact_chain_exits_zero(self, submit_application, database_url, capsys):
        submit_application()

        status = verify_audit_chain.main(["--database-url", database_url])

        assert status == 0
        assert json.loads(capsys.readouterr().out) == {"ok": True, "checked_count": 2}

    def test_broken_chain_exits_one(self, submit_application, engine, database_url, capsys):
        submit_application()
        uninstall_immutability_triggers(engine)
        with engine.begin() as conn:
            conn.execute(text("UPDATE audit_events SET actor_id = 'intruder' WHERE seq = 2"))
        install_immutability_triggers(engine)

        status = verify_audit_chain.main(["--database-url", database_url])

        assert status == 1
        report = json.loads(capsys.readouterr().out)
        assert report["ok"] is False
        assert report["mismatch"]["seq"] == 2
        assert report["mismatch"]["reason"] == "HASH_MISMATCH"

    def test_url_from_environment(self, engine, database_url, monkeypatch, capsys):
        monkeypatch.setenv("GOVFLOW_DATABASE_URL", database_url)

        assert verify_audit_chain.main([]) == 0
        assert json.loads(capsys.readouterr().out)["checked_count"] == 0


class TestApproveWorkflow:

    @pytest.fixture
    def sets_dir(self, tmp_path):
        target = tmp_path / "sets"
        shutil.copytree(DEFAULT_SETS_DIR, target)
        return target

    def test_pins_checksum(self, sets_dir, capsys):
        path = sets_dir / "no_due_certificate" / "1.0.0.yaml"

        checksum = approve_workflow.approve(path)

        assert checksum == compute_checksum(normalize_raw(load_yaml_file(path)))
        assert read_pinned_fingerprints(path.parent) == {"1.0.0": checksum}
        assert "Wrote" in capsys.readouterr().out
        assert default_registry(sets_dir).load_workflow("no_due_certificate").checksum == checksum

    def test_edit_after_pin_is_refused(self, sets_dir):
        path = sets_dir / "no_due_certificate" / "1.0.0.yaml"
        approve_workflow.approve(path)
        path.write_text(path.read_text().replace("max_cycles: 3", "max_cycles: 5"))

        with pytest.raises(WorkflowChecksumMismatchError):
            default_registry(sets_dir).load_workflow("no_due_certificate", "1.0.0")

    def test_invalid_definition_not_pinned(self, tmp_path, capsys):
        service_dir = tmp_path / "broken"
        service_dir.mkdir()
        path = service_dir / "1.0.yaml"
        path.write_text("service_key: broken\nversion: '1.0'\nstates: []\ntransitions: []\n")

        with pytest.raises(SystemExit) as exc_info:
            approve_workflow.approve(path)

        assert exc_info.value.code == 1
        assert "VALIDATION FAILED" in capsys.readouterr().out
        assert read_pinned_fingerprints(service_dir) == {}

    @pytest.mark.parametrize("argv,code", [
        (["approve_workflow.py"], 2),
        (["approve_workflow.py", "/nonexistent/1.0.yaml"], 1),
    ])
    def test_usage_errors(self, monkeypatch, argv, code):
        monkeypatch.setattr("sys.argv", argv)
        with pytest.raises(SystemExit) as exc_info:
            approve_workflow.main()
        assert exc_info.value.code == code
