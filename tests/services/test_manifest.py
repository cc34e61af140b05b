import json

import pytest

from stackbillinstaller.models import ProvisioningStep, StepResult, StepStatus
from stackbillinstaller.services.manifest import RunManifestService


class RecordingLogger:
    def __init__(self):
        self.warnings = []

    def warning(self, message, *args, **_kwargs):
        self.warnings.append(message % args if args else message)


def _step(name, critical=False):
    return ProvisioningStep(name=name, apply=lambda ctx: None, idempotency_check=lambda ctx: False, critical=critical)


def test_manifest_service_writes_run_metadata(tmp_path):
    manifest_file = tmp_path / ".stackbill" / "run-manifest.json"
    service = RunManifestService(str(manifest_file), logger=RecordingLogger())
    step = _step("install_mysql", critical=True)

    service.start_run("run-123", {"domain": "portal.example.com", "namespace": "sb-system"})
    service.set_state("running_steps")
    service.step_started(step)
    service.step_finished(step, StepResult("install_mysql", StepStatus.APPLIED, duration_seconds=12.3456))
    service.add_artifact("credentials_file", "/root/stackbill-credentials.txt")
    service.set_state("done")
    service.finalize("success")

    data = json.loads(manifest_file.read_text(encoding="utf-8"))

    assert data["run_id"] == "run-123"
    assert data["status"] == "success"
    assert data["state"] == "done"
    assert [entry["state"] for entry in data["state_history"]] == ["running_steps", "done"]
    assert data["context"]["domain"] == "portal.example.com"
    assert data["artifacts"]["credentials_file"] == "/root/stackbill-credentials.txt"
    assert data["steps"] == [
        {
            "name": "install_mysql",
            "status": "applied",
            "critical": True,
            "skip_group": None,
            "started_at": data["steps"][0]["started_at"],
            "duration_seconds": 12.346,
            "message": None,
        }
    ]
    assert data["duration_seconds"] is not None
    assert not list(manifest_file.parent.glob(".run-manifest-*"))


def test_step_finished_without_start_appends_entry(tmp_path):
    service = RunManifestService(str(tmp_path / "run-manifest.json"), logger=RecordingLogger())
    service.start_run("run-1", {})

    service.step_finished(_step("setup_nfs"), StepResult("setup_nfs", StepStatus.SKIPPED, message="--skip-db"))

    assert service.data["steps"][0]["status"] == "skipped"
    assert service.data["steps"][0]["message"] == "--skip-db"


def test_unknown_state_is_rejected(tmp_path):
    service = RunManifestService(str(tmp_path / "run-manifest.json"), logger=RecordingLogger())

    with pytest.raises(ValueError, match="Unknown run state"):
        service.set_state("installing")


def test_unwritable_manifest_only_warns(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    logger = RecordingLogger()
    service = RunManifestService(str(blocker / "run-manifest.json"), logger=logger)

    service.start_run("run-1", {})

    assert service.started is True
    assert any("Could not write manifest file" in warning for warning in logger.warnings)
