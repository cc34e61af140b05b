"""NFS export used by the application's persistent volumes."""

from typing import List

from stackbillinstaller.constants import NFS_DIR_MODE, NFS_EXPORT_OPTIONS, NFS_EXPORT_PATH, NFS_EXPORTS_FILE
from stackbillinstaller.models import ProvisioningStep, ServerContext

NFS_UNIT = "nfs-kernel-server"


class StorageSteps:
    def __init__(self, runner, host, filesystem, logger, exports_file: str = NFS_EXPORTS_FILE):
        self.runner = runner
        self.host = host
        self.filesystem = filesystem
        self.logger = logger
        self.exports_file = exports_file

    def build(self) -> List[ProvisioningStep]:
        return [
            ProvisioningStep(
                name="setup_nfs",
                description="Setting up NFS storage",
                idempotency_check=self.nfs_exported,
                apply=self.setup_nfs,
                readiness_check=lambda ctx: self.host.is_active(NFS_UNIT),
                timeout=30,
                remediation=f"Check `systemctl status {NFS_UNIT}` and the contents of {NFS_EXPORTS_FILE}.",
            )
        ]

    def nfs_exported(self, context: ServerContext) -> bool:
        return self.filesystem.file_contains_line(self.exports_file, NFS_EXPORT_PATH) and self.host.is_active(
            NFS_UNIT
        )

    def setup_nfs(self, context: ServerContext):
        if not self.host.command_exists("exportfs"):
            self.host.apt_install(["nfs-kernel-server"])

        self.filesystem.ensure_dir(NFS_EXPORT_PATH, NFS_DIR_MODE)
        self.filesystem.append_line_if_missing(
            self.exports_file, NFS_EXPORT_PATH, f"{NFS_EXPORT_PATH} {NFS_EXPORT_OPTIONS}"
        )
        self.runner.run(["exportfs", "-a"], capture_output=True)
        self.host.restart(NFS_UNIT)
        self.logger.info("NFS storage configured at %s", NFS_EXPORT_PATH)
