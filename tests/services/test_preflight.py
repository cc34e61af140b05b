import pytest
from rich.console import Console

from stackbillinstaller.errors import PrerequisiteMissing
from stackbillinstaller.models import ServerContext
from stackbillinstaller.services.preflight import PreflightService


class RecordingLogger:
    def __init__(self):
        self.warnings = []

    def warning(self, message, *args, **_kwargs):
        self.warnings.append(message % args if args else message)


class FakeRunner:
    def __init__(self, helm_version=""):
        self.helm_version = helm_version

    def output(self, cmd, timeout=30, **_kwargs):
        return self.helm_version if cmd[0] == "helm" else ""


def _context(**overrides):
    values = dict(
        server_ip="10.0.0.5",
        namespace="sb-system",
        domain="portal.example.com",
        ssl_cert_path="/tmp/cert.pem",
        ssl_key_path="/tmp/key.pem",
    )
    values.update(overrides)
    return ServerContext(**values)


def _service(tmp_path, available=(), helm_version="v3.14.2+gc309b6f", logger=None):
    return PreflightService(
        FakeRunner(helm_version),
        logger=logger or RecordingLogger(),
        console=Console(record=True),
        which=lambda tool: f"/usr/bin/{tool}" if tool in available else None,
        os_release_path=str(tmp_path / "os-release"),
        meminfo_path=str(tmp_path / "meminfo"),
    )


def test_skip_infra_requires_existing_cluster_tools(tmp_path):
    service = _service(tmp_path, available=("helm",))

    with pytest.raises(PrerequisiteMissing, match="Required command not found: kubectl"):
        service.check_tools(_context(skip_infra=True, skip_db=True))


def test_helm_2_is_rejected(tmp_path):
    service = _service(tmp_path, available=("kubectl", "helm"), helm_version="Client: v2.17.0+ga690bad")

    with pytest.raises(PrerequisiteMissing, match="helm>=3"):
        service.check_tools(_context(skip_infra=True, skip_db=True))


def test_database_steps_need_apt_and_systemd(tmp_path):
    service = _service(tmp_path, available=("apt-get",))

    with pytest.raises(PrerequisiteMissing, match="systemctl"):
        service.check_tools(_context())


def test_full_install_needs_no_cluster_tools(tmp_path):
    service = _service(tmp_path, available=("apt-get", "systemctl"))

    service.check_tools(_context())


def test_system_requirements_only_warn(tmp_path, monkeypatch):
    (tmp_path / "os-release").write_text('NAME="Rocky Linux"\nID="rocky"\n', encoding="utf-8")
    (tmp_path / "meminfo").write_text("MemTotal:        2048000 kB\n", encoding="utf-8")
    monkeypatch.setattr("stackbillinstaller.services.preflight.os.cpu_count", lambda: 2)
    logger = RecordingLogger()

    _service(tmp_path, logger=logger).check_system_requirements()

    assert any("rocky" in warning for warning in logger.warnings)
    assert any("CPU cores" in warning for warning in logger.warnings)
    assert any("GB RAM" in warning for warning in logger.warnings)
