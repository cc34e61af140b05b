import subprocess

from stackbillinstaller.models import ServerContext
from stackbillinstaller.services.storage import StorageSteps


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None


class FakeRunner:
    def __init__(self):
        self.calls = []

    def run(self, cmd, check=True, capture_output=False, **kwargs):
        self.calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


class FakeHost:
    def __init__(self, active=False, has_exportfs=True):
        self.active = active
        self.has_exportfs = has_exportfs
        self.actions = []

    def is_active(self, *units):
        return self.active

    def command_exists(self, name):
        return self.has_exportfs

    def apt_install(self, packages, update=True):
        self.actions.append(("install", tuple(packages)))

    def restart(self, unit):
        self.actions.append(("restart", unit))
        self.active = True


class FakeFilesystem:
    def __init__(self):
        self.dirs = []

    def ensure_dir(self, path, mode):
        self.dirs.append((path, mode))

    def file_contains_line(self, path, needle):
        with open(path, "r", encoding="utf-8") as file_obj:
            return any(needle in line for line in file_obj)

    def append_line_if_missing(self, path, needle, line):
        if self.file_contains_line(path, needle):
            return False
        with open(path, "a", encoding="utf-8") as file_obj:
            file_obj.write(line + "\n")
        return True


def _context():
    return ServerContext(
        server_ip="10.0.0.5",
        namespace="sb-system",
        domain="portal.example.com",
        ssl_cert_path="/tmp/cert.pem",
        ssl_key_path="/tmp/key.pem",
    )


def test_setup_nfs_exports_directory_once(tmp_path):
    exports = tmp_path / "exports"
    exports.write_text("", encoding="utf-8")
    runner = FakeRunner()
    host = FakeHost(has_exportfs=False)
    filesystem = FakeFilesystem()
    steps = StorageSteps(runner, host, filesystem, logger=DummyLogger(), exports_file=str(exports))
    step = steps.build()[0]

    assert step.name == "setup_nfs"
    assert step.critical is False
    assert step.idempotency_check(_context()) is False

    step.apply(_context())
    step.apply(_context())

    assert exports.read_text(encoding="utf-8").count("/data/stackbill") == 1
    assert filesystem.dirs[0] == ("/data/stackbill", 0o777)
    assert host.actions[0] == ("install", ("nfs-kernel-server",))
    assert ["exportfs", "-a"] in runner.calls
    assert step.idempotency_check(_context()) is True
    assert step.readiness_check(_context()) is True
