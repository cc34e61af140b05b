"""apt and systemd operations on the provisioning host."""

import shutil
from typing import Callable, Iterable, List, Optional

from stackbillinstaller.constants import APT_LOCK_FILES, APT_LOCK_POLL, APT_LOCK_TIMEOUT
from stackbillinstaller.errors import InstallerError

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
# apt-get exits with 100 when it cannot take the dpkg lock.
APT_LOCK_RETURNCODE = 100


class HostPackageService:
    """Installs packages and drives system services.

    Every package operation first waits for the dpkg/apt locks to clear, since
    host package-manager calls are not safe to run concurrently.
    """

    def __init__(
        self,
        runner,
        waiter,
        logger,
        console,
        lock_files: Iterable[str] = APT_LOCK_FILES,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.runner = runner
        self.waiter = waiter
        self.logger = logger
        self.console = console
        self.lock_files = tuple(lock_files)
        self.which = which

    def command_exists(self, name: str) -> bool:
        return self.which(name) is not None

    def apt_locks_free(self) -> bool:
        if not self.command_exists("fuser"):
            return True
        for lock_file in self.lock_files:
            if self.runner.succeeds(["fuser", lock_file]):
                return False
        return True

    def wait_for_apt_lock(self):
        self.logger.info("Checking for apt locks...")
        result = self.waiter.wait_until(
            self.apt_locks_free,
            timeout=APT_LOCK_TIMEOUT,
            poll_interval=APT_LOCK_POLL,
            description="apt lock",
        )
        if not result.ready:
            raise InstallerError(
                f"Timeout waiting for apt locks ({result.reason}). Try: sudo killall apt apt-get dpkg"
            )
        if result.attempts > 1:
            self.logger.info("apt locks released after %.0fs", result.elapsed)

    def apt_update(self):
        self.wait_for_apt_lock()
        self.runner.run(
            ["apt-get", "update", "-qq"],
            capture_output=True,
            env=APT_ENV,
            retry_count=2,
            retry_backoff_seconds=5.0,
            retry_on_returncodes=[APT_LOCK_RETURNCODE],
        )

    def apt_install(self, packages: List[str], update: bool = True):
        if update:
            self.apt_update()
        else:
            self.wait_for_apt_lock()
        self.console.print(f"[blue]Installing {', '.join(packages)} via apt...[/blue]")
        self.runner.run(
            ["apt-get", "install", "-y", "-qq"] + list(packages),
            capture_output=True,
            env=APT_ENV,
            retry_count=2,
            retry_backoff_seconds=5.0,
            retry_on_returncodes=[APT_LOCK_RETURNCODE],
        )

    def apt_remove(self, packages: List[str]):
        self.wait_for_apt_lock()
        self.runner.run(
            ["apt-get", "remove", "-y", "-qq"] + list(packages),
            check=False,
            capture_output=True,
            env=APT_ENV,
        )

    def is_active(self, *units: str) -> bool:
        return any(self.runner.succeeds(["systemctl", "is-active", "--quiet", unit]) for unit in units)

    def start_and_enable(self, unit: str):
        self.runner.run(["systemctl", "start", unit], capture_output=True)
        self.runner.run(["systemctl", "enable", unit], capture_output=True)

    def restart(self, unit: str):
        self.runner.run(["systemctl", "restart", unit], capture_output=True)

    def stop_and_disable(self, unit: str):
        self.runner.run(["systemctl", "stop", unit], check=False, capture_output=True)
        self.runner.run(["systemctl", "disable", unit], check=False, capture_output=True)
