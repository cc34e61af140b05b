"""JSON record of one provisioning run."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from stackbillinstaller.models import ProvisioningStep, StepResult

RUN_STATES = ("validating", "resolving_credentials", "running_steps", "reporting", "done", "aborted")


class RunManifestService:
    """Tracks the run state machine and every step outcome, rewriting the file atomically on each change.

    The manifest never holds secrets: only step names, statuses, messages and
    file paths are recorded.
    """

    def __init__(self, manifest_file: str, logger):
        self.manifest_file = manifest_file
        self.logger = logger
        self.started = False
        self.data: Dict[str, Any] = {
            "run_id": None,
            "state": None,
            "state_history": [],
            "status": None,
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "context": {},
            "steps": [],
            "artifacts": {},
            "error": None,
        }

    def start_run(self, run_id: str, context: Dict[str, Any]):
        self.started = True
        self.data.update(run_id=run_id, status="running", started_at=self._now(), context=context)
        self.write()

    def set_state(self, state: str):
        if state not in RUN_STATES:
            raise ValueError(f"Unknown run state: {state}")
        self.data["state"] = state
        self.data["state_history"].append({"state": state, "at": self._now()})
        self.write()

    def step_started(self, step: ProvisioningStep, _result: Optional[StepResult] = None):
        self.data["steps"].append(
            {
                "name": step.name,
                "status": "running",
                "critical": step.critical,
                "skip_group": step.skip_group,
                "started_at": self._now(),
                "duration_seconds": None,
                "message": None,
            }
        )
        self.write()

    def step_finished(self, step: ProvisioningStep, result: StepResult):
        running = [item for item in self.data["steps"] if item["name"] == step.name and item["status"] == "running"]
        entry = running[-1] if running else None
        if entry is None:
            entry = {"name": step.name, "critical": step.critical, "skip_group": step.skip_group, "started_at": None}
            self.data["steps"].append(entry)
        entry["status"] = result.status.value
        entry["duration_seconds"] = round(result.duration_seconds, 3)
        entry["message"] = result.message or None
        self.write()

    def add_artifact(self, key: str, value: str):
        self.data["artifacts"][key] = value
        self.write()

    def finalize(self, status: str, error: Optional[str] = None):
        finished = datetime.now(timezone.utc)
        self.data["status"] = status
        self.data["finished_at"] = finished.isoformat()
        if self.data["started_at"]:
            elapsed = finished - datetime.fromisoformat(self.data["started_at"])
            self.data["duration_seconds"] = elapsed.total_seconds()
        self.data["error"] = error
        self.write()

    def write(self):
        directory = os.path.dirname(os.path.abspath(self.manifest_file))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix=".run-manifest-", suffix=".json", dir=directory)
        except OSError as exc:
            self.logger.warning("Could not write manifest file '%s': %s", self.manifest_file, exc)
            return

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.data, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.manifest_file)
        except OSError as exc:
            self.logger.warning("Could not write manifest file '%s': %s", self.manifest_file, exc)
            if os.path.exists(temp_path):
                os.remove(temp_path)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
