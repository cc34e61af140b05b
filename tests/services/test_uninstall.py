from rich.console import Console

from stackbillinstaller.services.uninstall import UninstallService


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class FakeRunner:
    def __init__(self, release_exists=True):
        self.release_exists = release_exists
        self.calls = []

    def succeeds(self, cmd, timeout=30, **_kwargs):
        self.calls.append(cmd)
        return self.release_exists

    def output(self, cmd, timeout=30, **_kwargs):
        self.calls.append(cmd)
        return "No resources found"

    def run(self, cmd, check=True, capture_output=False, **_kwargs):
        self.calls.append(cmd)


class FakeKube:
    def __init__(self):
        self.kubectl_calls = []
        self.helm_calls = []

    def kubectl(self, *args, **_kwargs):
        self.kubectl_calls.append(args)

    def helm(self, *args, **_kwargs):
        self.helm_calls.append(args)


class FakeHost:
    def __init__(self, active=()):
        self.active = set(active)
        self.actions = []

    def is_active(self, *units):
        return any(unit in self.active for unit in units)

    def stop_and_disable(self, unit):
        self.actions.append(("stop", unit))

    def apt_remove(self, packages):
        self.actions.append(("remove", tuple(packages)))


class FakeFilesystem:
    def __init__(self):
        self.cleaned = []
        self.removed = []

    def cleanup_dir(self, path):
        self.cleaned.append(path)

    def remove_file(self, path):
        self.removed.append(path)

    def remove_lines_containing(self, path, needle):
        with open(path, "r", encoding="utf-8") as file_obj:
            lines = file_obj.readlines()
        kept = [line for line in lines if needle not in line]
        with open(path, "w", encoding="utf-8") as file_obj:
            file_obj.writelines(kept)
        return len(lines) - len(kept)


class FakeStore:
    def __init__(self):
        self.purged = False

    def purge(self):
        self.purged = True
        return True


def _service(tmp_path, runner=None, kube=None, host=None, store=None, filesystem=None):
    return UninstallService(
        runner or FakeRunner(),
        kube or FakeKube(),
        host or FakeHost(),
        filesystem or FakeFilesystem(),
        store or FakeStore(),
        logger=DummyLogger(),
        console=Console(record=True),
        exports_file=str(tmp_path / "exports"),
        nfs_path=str(tmp_path / "data" / "stackbill"),
    )


def test_default_uninstall_keeps_data(tmp_path):
    kube = FakeKube()
    store = FakeStore()

    removed = _service(tmp_path, kube=kube, store=store).run("sb-system", "stackbill")

    assert removed == ["helm release stackbill", "istio resources"]
    assert kube.helm_calls == [("uninstall", "stackbill", "-n", "sb-system")]
    assert ("delete", "gateway", "-n", "sb-system", "--all") in kube.kubectl_calls
    assert not any(call[1] in ("pvc", "namespace") for call in kube.kubectl_calls)
    assert store.purged is False


def test_missing_release_is_not_an_error(tmp_path):
    kube = FakeKube()

    removed = _service(tmp_path, runner=FakeRunner(release_exists=False), kube=kube).run("sb-system", "stackbill")

    assert removed == ["istio resources"]
    assert kube.helm_calls == []


def test_full_uninstall_removes_everything_requested(tmp_path):
    nfs_dir = tmp_path / "data" / "stackbill"
    nfs_dir.mkdir(parents=True)
    exports = tmp_path / "exports"
    exports.write_text(f"/srv/keep *(ro)\n{nfs_dir} *(rw)\n", encoding="utf-8")
    runner = FakeRunner()
    kube = FakeKube()
    host = FakeHost(active=["mysql", "rabbitmq-server"])
    store = FakeStore()
    filesystem = FakeFilesystem()
    service = _service(tmp_path, runner=runner, kube=kube, host=host, store=store, filesystem=filesystem)

    removed = service.run("sb-system", "stackbill", delete_pvc=True, delete_namespace=True, delete_db=True)

    assert removed == [
        "helm release stackbill",
        "istio resources",
        "persistent volume claims",
        "namespace sb-system",
        "mysql",
        "rabbitmq-server",
        "nfs data",
        "credentials file",
    ]
    assert ("stop", "mongod") not in host.actions
    assert ("remove", ("mysql-server", "mysql-client")) in host.actions
    assert filesystem.cleaned == ["/var/lib/mysql", "/var/lib/rabbitmq", str(nfs_dir)]
    assert exports.read_text(encoding="utf-8") == "/srv/keep *(ro)\n"
    assert ["exportfs", "-a"] in runner.calls
    assert ["kubectl", "get", "all", "-n", "sb-system"] not in runner.calls
    assert store.purged is True
