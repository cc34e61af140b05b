"""Host prerequisite checks run before any provisioning step."""

import os
import re
import shutil

from packaging.version import InvalidVersion, Version

from stackbillinstaller.constants import MIN_CPU_CORES, MIN_DISK_GB, MIN_MEMORY_GB
from stackbillinstaller.errors import PrerequisiteMissing
from stackbillinstaller.errors_catalog import actionable_error
from stackbillinstaller.models import ServerContext

HELM_VERSION_PATTERN = re.compile(r"v?(\d+\.\d+\.\d+)")


class PreflightService:
    def __init__(
        self,
        runner,
        logger,
        console,
        which=shutil.which,
        os_release_path: str = "/etc/os-release",
        meminfo_path: str = "/proc/meminfo",
    ):
        self.runner = runner
        self.logger = logger
        self.console = console
        self.which = which
        self.os_release_path = os_release_path
        self.meminfo_path = meminfo_path

    def check_tools(self, context: ServerContext):
        """Raise PrerequisiteMissing when a tool the selected steps rely on is absent."""
        if context.skip_infra:
            self._require("kubectl", "Install kubectl or run without --skip-infra.")
            self._require("helm", "Install Helm 3 or run without --skip-infra.")
            self._require_helm3()
        if not context.skip_db:
            self._require("apt-get", "The database steps need an apt-based host (Ubuntu 22.04/24.04).")
            self._require("systemctl", "The database steps need a systemd host.")

    def check_system_requirements(self):
        """Warn, without failing, when the host is below the recommended sizing."""
        distro = self._os_release_id()
        if distro and distro != "ubuntu":
            self._warn(f"Detected '{distro}'. The installer is tested on Ubuntu 22.04/24.04 only.")

        cpu_count = os.cpu_count() or 0
        if cpu_count < MIN_CPU_CORES:
            self._warn(f"Only {cpu_count} CPU cores detected; {MIN_CPU_CORES} or more are recommended.")

        memory_gb = self._memory_gb()
        if memory_gb is not None and memory_gb < MIN_MEMORY_GB:
            self._warn(f"Only {memory_gb:.1f} GB RAM detected; {MIN_MEMORY_GB} GB or more is recommended.")

        try:
            free_gb = shutil.disk_usage("/").free / (1024 ** 3)
        except OSError:
            free_gb = None
        if free_gb is not None and free_gb < MIN_DISK_GB:
            self._warn(f"Only {free_gb:.0f} GB free disk detected; {MIN_DISK_GB} GB or more is recommended.")

    def _require(self, tool: str, hint: str):
        if self.which(tool) is None:
            raise PrerequisiteMissing(actionable_error("prerequisite_missing", tool=tool, hint=hint))

    def _require_helm3(self):
        raw = self.runner.output(["helm", "version", "--short"])
        match = HELM_VERSION_PATTERN.search(raw)
        if not match:
            self.logger.warning("Could not determine the Helm version from %r", raw)
            return
        try:
            version = Version(match.group(1))
        except InvalidVersion:
            return
        if version.major < 3:
            hint = f"Found Helm {version}; upgrade to Helm 3."
            raise PrerequisiteMissing(actionable_error("prerequisite_missing", tool="helm>=3", hint=hint))

    def _os_release_id(self):
        if not os.path.exists(self.os_release_path):
            return None
        with open(self.os_release_path, "r", encoding="utf-8") as file_obj:
            for line in file_obj:
                if line.startswith("ID="):
                    return line.split("=", 1)[1].strip().strip('"').lower()
        return None

    def _memory_gb(self):
        if not os.path.exists(self.meminfo_path):
            return None
        with open(self.meminfo_path, "r", encoding="utf-8") as file_obj:
            for line in file_obj:
                if line.startswith("MemTotal:"):
                    parts = line.split()
                    try:
                        return int(parts[1]) / (1024 ** 2)
                    except (IndexError, ValueError):
                        return None
        return None

    def _warn(self, message: str):
        self.console.print(f"[yellow]Warning: {message}[/yellow]")
        self.logger.warning(message)
