import json
import logging
import os
import stat

import pytest

from stackbillinstaller.core import StackBillInstaller
from stackbillinstaller.errors import InstallerError, PrerequisiteMissing
from stackbillinstaller.models import ProvisioningStep
from stackbillinstaller.services.validation import ValidationService


class FakePreflight:
    def __init__(self, missing_tool=None):
        self.missing_tool = missing_tool

    def check_tools(self, _context):
        if self.missing_tool:
            raise PrerequisiteMissing(f"Required command not found: {self.missing_tool}")

    def check_system_requirements(self):
        return None


class SpyHost:
    """Remembers applied steps across runs, like a real host would."""

    def __init__(self):
        self.applied = set()
        self.calls = []

    def step(self, name, critical=True, ready=True):
        def apply(context):
            assert context.credentials is not None
            self.calls.append(name)
            self.applied.add(name)

        return ProvisioningStep(
            name=name,
            apply=apply,
            idempotency_check=lambda context: name in self.applied,
            readiness_check=lambda context: ready,
            timeout=1,
            poll_interval=5,
            critical=critical,
        )


def build_installer(tmp_path, monkeypatch, steps=None, preflight=None, **kwargs):
    cert = tmp_path / "cert.pem"
    key = tmp_path / "key.pem"
    cert.write_text("CERT", encoding="utf-8")
    key.write_text("KEY", encoding="utf-8")

    options = dict(
        domain="portal.example.com",
        ssl_cert=str(cert),
        ssl_key=str(key),
        server_ip="10.0.0.5",
        credentials_file=str(tmp_path / "stackbill-credentials.txt"),
        manifest_file=str(tmp_path / "run-manifest.json"),
    )
    options.update(kwargs)
    installer = StackBillInstaller(**options)
    installer.validation_service = ValidationService(
        environ={"STACKBILL_REGISTRY_TOKEN": "registry-tok"}, token_files=(), euid_provider=lambda: 0
    )
    installer.preflight_service = preflight or FakePreflight()
    monkeypatch.setattr(installer, "build_steps", lambda context: list(steps or []))
    return installer


def read_manifest(tmp_path):
    return json.loads((tmp_path / "run-manifest.json").read_text(encoding="utf-8"))


def test_fresh_install_persists_credentials_and_manifest(tmp_path, monkeypatch, capsys):
    host = SpyHost()
    installer = build_installer(tmp_path, monkeypatch, steps=[host.step("install_k3s"), host.step("setup_nfs", False)])

    exit_code = installer.run()

    credentials_file = tmp_path / "stackbill-credentials.txt"
    manifest = read_manifest(tmp_path)
    assert exit_code == 0
    assert host.calls == ["install_k3s", "setup_nfs"]
    assert stat.S_IMODE(os.stat(credentials_file).st_mode) == 0o600
    assert manifest["status"] == "success"
    assert manifest["state"] == "done"
    assert [step["status"] for step in manifest["steps"]] == ["applied", "applied"]
    assert manifest["artifacts"]["credentials_file"] == str(credentials_file)

    output = capsys.readouterr().out
    for password in installer.context.credentials.secrets().values():
        assert password not in output
        assert password not in json.dumps(manifest)


def test_rerun_reuses_passwords_and_skips_satisfied_steps(tmp_path, monkeypatch):
    host = SpyHost()
    first = build_installer(tmp_path, monkeypatch, steps=[host.step("install_mysql")])
    assert first.run() == 0
    first_secrets = first.context.credentials.secrets()

    second = build_installer(tmp_path, monkeypatch, steps=[host.step("install_mysql")])
    assert second.run() == 0

    assert second.credential_store.reused is True
    assert second.context.credentials.secrets() == first_secrets
    assert host.calls == ["install_mysql"]
    assert read_manifest(tmp_path)["steps"][0]["status"] == "already_satisfied"


def test_password_override_replaces_only_that_service(tmp_path, monkeypatch):
    first = build_installer(tmp_path, monkeypatch)
    assert first.run() == 0
    first_secrets = first.context.credentials.secrets()

    second = build_installer(tmp_path, monkeypatch, mysql_password="Override123")
    assert second.run() == 0

    secrets = second.context.credentials.secrets()
    assert secrets["mysql"] == "Override123"
    assert secrets["mongodb"] == first_secrets["mongodb"]
    assert "Password: Override123" in (tmp_path / "stackbill-credentials.txt").read_text(encoding="utf-8")


def test_missing_certificate_fails_before_any_side_effect(tmp_path, monkeypatch):
    host = SpyHost()
    installer = build_installer(tmp_path, monkeypatch, steps=[host.step("install_k3s")], ssl_cert=None)

    assert installer.run() == 1

    assert host.calls == []
    assert not (tmp_path / "run-manifest.json").exists()
    assert not (tmp_path / "stackbill-credentials.txt").exists()


def test_missing_prerequisite_fails_before_manifest(tmp_path, monkeypatch):
    installer = build_installer(tmp_path, monkeypatch, preflight=FakePreflight(missing_tool="helm"), skip_infra=True)

    assert installer.run() == 1
    assert not (tmp_path / "run-manifest.json").exists()


def test_critical_timeout_aborts_without_persisting_credentials(tmp_path, monkeypatch):
    host = SpyHost()
    steps = [host.step("install_mongodb", ready=False), host.step("install_rabbitmq")]
    installer = build_installer(tmp_path, monkeypatch, steps=steps)

    assert installer.run() == 1

    manifest = read_manifest(tmp_path)
    assert host.calls == ["install_mongodb"]
    assert manifest["status"] == "aborted"
    assert manifest["state"] == "aborted"
    assert [step["status"] for step in manifest["steps"]] == ["fatal_error"]
    assert "install_mongodb" in manifest["error"]
    assert not (tmp_path / "stackbill-credentials.txt").exists()


def test_non_critical_timeout_still_succeeds(tmp_path, monkeypatch):
    host = SpyHost()
    steps = [host.step("create_gateway", critical=False, ready=False), host.step("deploy_stackbill", critical=False)]
    installer = build_installer(tmp_path, monkeypatch, steps=steps, auto_configure=False)

    assert installer.run() == 0

    manifest = read_manifest(tmp_path)
    assert [step["status"] for step in manifest["steps"]] == ["degraded_warning", "applied"]
    assert (tmp_path / "stackbill-credentials.txt").exists()


def test_dry_run_changes_nothing(tmp_path, monkeypatch, capsys):
    host = SpyHost()
    installer = build_installer(tmp_path, monkeypatch, steps=[host.step("install_k3s")], dry_run=True)

    assert installer.run() == 0

    assert host.calls == []
    assert not (tmp_path / "run-manifest.json").exists()
    assert not (tmp_path / "stackbill-credentials.txt").exists()
    assert "Dry run complete" in capsys.readouterr().out


def test_configure_controller_skipped_when_deploy_did_not_succeed(tmp_path, monkeypatch):
    installer = build_installer(tmp_path, monkeypatch)

    outcome = installer.configure_controller(installer.validate(), [])

    assert outcome.configured is False
    assert outcome.exhausted is True


def test_detect_server_ip_uses_first_address(tmp_path, monkeypatch):
    installer = build_installer(tmp_path, monkeypatch, server_ip=None)
    monkeypatch.setattr(installer.command_runner, "output", lambda cmd, **_kwargs: "10.1.2.3 172.17.0.1")

    assert installer.detect_server_ip() == "10.1.2.3"

    monkeypatch.setattr(installer.command_runner, "output", lambda cmd, **_kwargs: "")
    with pytest.raises(InstallerError, match="--server-ip"):
        installer.detect_server_ip()


def test_non_critical_step_error_is_reported_and_credentials_persisted(tmp_path, monkeypatch):
    host = SpyHost()

    def unreadable_exports(_context):
        raise UnicodeDecodeError("utf-8", b"\xff\xfe", 0, 1, "invalid start byte")

    nfs = host.step("setup_nfs", critical=False)
    nfs.idempotency_check = unreadable_exports
    installer = build_installer(tmp_path, monkeypatch, steps=[nfs, host.step("deploy_stackbill")], auto_configure=False)

    assert installer.run() == 0

    manifest = read_manifest(tmp_path)
    assert [step["status"] for step in manifest["steps"]] == ["degraded_warning", "applied"]
    assert host.calls == ["deploy_stackbill"]
    assert (tmp_path / "stackbill-credentials.txt").exists()


def test_keyboard_interrupt_cancels_run_deadline(tmp_path, monkeypatch):
    host = SpyHost()
    step = host.step("install_k3s")

    def interrupted(_context):
        raise KeyboardInterrupt

    step.apply = interrupted
    installer = build_installer(tmp_path, monkeypatch, steps=[step])

    assert installer.run() == 1

    assert installer.deadline.cancelled is True
    assert installer.deadline.expired is True
    assert read_manifest(tmp_path)["status"] == "aborted"


def test_unexpected_error_is_logged_masked_without_traceback_at_error(tmp_path, monkeypatch, caplog):
    installer = build_installer(tmp_path, monkeypatch, mysql_password="Override123")

    def broken_report(*_args, **_kwargs):
        raise RuntimeError("report failed for Override123")

    monkeypatch.setattr(installer.reporter, "report", broken_report)
    caplog.set_level(logging.DEBUG, logger="stackbillinstaller")

    assert installer.run() == 1

    assert all("Override123" not in record.getMessage() for record in caplog.records)
    errors = [record for record in caplog.records if record.levelno == logging.ERROR]
    assert any("Unexpected error: report failed for ******" == record.getMessage() for record in errors)
    assert all(record.exc_info is None for record in errors)
    assert "Override123" not in read_manifest(tmp_path)["error"]
