"""Removal of a StackBill installation."""

import os
from typing import List

from stackbillinstaller.constants import NFS_EXPORT_PATH, NFS_EXPORTS_FILE

ISTIO_RESOURCES = ("gateway", "virtualservice", "destinationrule")

# (systemd unit, apt packages, data directories, extra files)
HOST_SERVICES = (
    ("mysql", ["mysql-server", "mysql-client"], ["/var/lib/mysql"], []),
    ("mongod", ["mongodb-org"], ["/var/lib/mongodb"], ["/etc/apt/sources.list.d/mongodb-org-7.0.list"]),
    ("rabbitmq-server", ["rabbitmq-server"], ["/var/lib/rabbitmq"], []),
)


class UninstallService:
    def __init__(
        self,
        runner,
        kube,
        host,
        filesystem,
        store,
        logger,
        console,
        exports_file: str = NFS_EXPORTS_FILE,
        nfs_path: str = NFS_EXPORT_PATH,
    ):
        self.runner = runner
        self.kube = kube
        self.host = host
        self.filesystem = filesystem
        self.store = store
        self.logger = logger
        self.console = console
        self.exports_file = exports_file
        self.nfs_path = nfs_path

    def run(
        self,
        namespace: str,
        release: str,
        delete_pvc: bool = False,
        delete_namespace: bool = False,
        delete_db: bool = False,
    ) -> List[str]:
        """Remove what was requested and return a short description of each removal."""
        removed = []
        if self.uninstall_release(release, namespace):
            removed.append(f"helm release {release}")
        self.delete_istio_resources(namespace)
        removed.append("istio resources")

        if delete_pvc:
            self.kube.kubectl("delete", "pvc", "-n", namespace, "--all", check=False)
            removed.append("persistent volume claims")
        if delete_namespace:
            self.kube.kubectl("delete", "namespace", namespace, "--wait=false", check=False)
            removed.append(f"namespace {namespace}")
        if delete_db:
            removed.extend(self.remove_host_services())
            if self.remove_nfs_data():
                removed.append("nfs data")
            if self.store.purge():
                removed.append("credentials file")

        if not delete_namespace:
            self.console.print(f"\n[bold]Remaining resources in namespace '{namespace}':[/bold]")
            remaining = self.runner.output(["kubectl", "get", "all", "-n", namespace])
            self.console.print(remaining or "  (none)")
        return removed

    def uninstall_release(self, release: str, namespace: str) -> bool:
        if not self.runner.succeeds(["helm", "status", release, "-n", namespace]):
            self.console.print(f"[yellow]Release '{release}' not found in namespace '{namespace}'[/yellow]")
            return False
        self.kube.helm("uninstall", release, "-n", namespace)
        self.logger.info("Helm release %s uninstalled", release)
        return True

    def delete_istio_resources(self, namespace: str):
        for kind in ISTIO_RESOURCES:
            self.kube.kubectl("delete", kind, "-n", namespace, "--all", check=False)
        self.kube.kubectl("delete", "secret", "istio-ingressgateway-certs", "-n", "istio-system", check=False)
        self.logger.info("Istio resources deleted")

    def remove_host_services(self) -> List[str]:
        removed = []
        for unit, packages, data_dirs, extra_files in HOST_SERVICES:
            if not self.host.is_active(unit):
                continue
            self.console.print(f"[blue]Stopping and removing {unit}...[/blue]")
            self.host.stop_and_disable(unit)
            self.host.apt_remove(packages)
            for path in data_dirs:
                self.filesystem.cleanup_dir(path)
            for path in extra_files:
                self.filesystem.remove_file(path)
            removed.append(unit)
        return removed

    def remove_nfs_data(self) -> bool:
        had_data = os.path.isdir(self.nfs_path)
        removed_lines = self.filesystem.remove_lines_containing(self.exports_file, self.nfs_path)
        self.filesystem.cleanup_dir(self.nfs_path)
        if removed_lines:
            self.runner.run(["exportfs", "-a"], check=False, capture_output=True)
        return had_data or removed_lines > 0
