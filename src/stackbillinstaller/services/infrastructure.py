"""Kubernetes infrastructure steps: kubectl, K3s, Helm, Istio, storage class."""

import os
import shutil
import tempfile
from typing import List

from stackbillinstaller.constants import (
    BIN_DIR,
    BINARY_MODE,
    HELM_INSTALL_URL,
    ISTIO_DOWNLOAD_URL,
    ISTIO_VERSION,
    K3S_INSTALL_URL,
    K3S_KUBECONFIG,
    K3S_VERSION,
    KUBECTL_BINARY_URL,
    KUBECTL_STABLE_URL,
    MESH_READY_TIMEOUT,
    NODE_READY_TIMEOUT,
    POD_READY_POLL,
    SECRET_FILE_MODE,
)
from stackbillinstaller.errors import InstallerError
from stackbillinstaller.models import ProvisioningStep, ServerContext

ISTIO_NAMESPACE = "istio-system"


class InfrastructureSteps:
    """Builds the cluster and mesh steps. All of them honour ``--skip-infra``
    except the final cluster verification."""

    def __init__(self, runner, kube, host, download, filesystem, logger, console):
        self.runner = runner
        self.kube = kube
        self.host = host
        self.download = download
        self.filesystem = filesystem
        self.logger = logger
        self.console = console

    def build(self) -> List[ProvisioningStep]:
        skip_remediation = "Re-run with `--skip-infra` to use an existing cluster."
        return [
            ProvisioningStep(
                name="install_kubectl",
                description="Installing kubectl",
                idempotency_check=lambda ctx: self.host.command_exists("kubectl"),
                apply=self.install_kubectl,
                readiness_check=lambda ctx: self.runner.succeeds(["kubectl", "version", "--client"]),
                timeout=10,
                critical=True,
                skip_group="infra",
                remediation=f"Install kubectl manually. {skip_remediation}",
            ),
            ProvisioningStep(
                name="install_k3s",
                description="Installing K3s Kubernetes",
                idempotency_check=lambda ctx: self.kube.cluster_reachable(),
                apply=self.install_k3s,
                readiness_check=lambda ctx: self.kube.nodes_ready(),
                timeout=NODE_READY_TIMEOUT,
                poll_interval=POD_READY_POLL,
                critical=True,
                skip_group="infra",
                remediation=f"Check `journalctl -u k3s`. {skip_remediation}",
            ),
            ProvisioningStep(
                name="install_helm",
                description="Installing Helm",
                idempotency_check=lambda ctx: self.host.command_exists("helm"),
                apply=self.install_helm,
                readiness_check=lambda ctx: self.runner.succeeds(["helm", "version", "--short"]),
                timeout=10,
                critical=True,
                skip_group="infra",
                remediation="Install Helm 3 manually from https://helm.sh and re-run.",
            ),
            ProvisioningStep(
                name="install_istio",
                description="Installing Istio service mesh",
                idempotency_check=lambda ctx: self.kube.pods_running(ISTIO_NAMESPACE, "app=istiod"),
                apply=self.install_istio,
                readiness_check=lambda ctx: self.istio_ready(),
                timeout=MESH_READY_TIMEOUT,
                poll_interval=POD_READY_POLL,
                critical=True,
                skip_group="infra",
                remediation="Check `kubectl get pods -n istio-system` and re-run the installer.",
            ),
            ProvisioningStep(
                name="default_storage_class",
                description="Setting up the default storage class",
                idempotency_check=lambda ctx: self.kube.default_storage_class() is not None,
                apply=self.set_default_storage_class,
                readiness_check=lambda ctx: self.kube.default_storage_class() is not None,
                timeout=30,
                poll_interval=POD_READY_POLL,
                skip_group="infra",
                remediation="Mark a storage class as default with the "
                "`storageclass.kubernetes.io/is-default-class` annotation.",
            ),
            ProvisioningStep(
                name="verify_cluster",
                description="Verifying Kubernetes setup",
                idempotency_check=lambda ctx: self.cluster_verified(),
                apply=self.fail_verification,
                critical=True,
                remediation="Check your kubeconfig, or re-run without `--skip-infra` to install K3s.",
            ),
        ]

    def install_kubectl(self, context: ServerContext):
        version = self.download.fetch_text(KUBECTL_STABLE_URL)
        target = os.path.join(BIN_DIR, "kubectl")
        self.download.download_file(
            KUBECTL_BINARY_URL.format(version=version), target, f"Downloading kubectl {version}..."
        )
        self.filesystem.set_permissions(target, BINARY_MODE)
        self.logger.info("kubectl %s installed to %s", version, target)

    def install_k3s(self, context: ServerContext):
        if self.host.command_exists("k3s"):
            self.logger.info("K3s binary already present; refreshing kubeconfig only.")
        else:
            self.console.print(f"[blue]Installing K3s {K3S_VERSION}. This may take a few minutes...[/blue]")
            self._run_installer_script(
                K3S_INSTALL_URL,
                ["sh"],
                args=["--write-kubeconfig-mode", "644", "--disable", "traefik", "--disable", "servicelb"],
                env={"INSTALL_K3S_VERSION": K3S_VERSION},
            )
        self.setup_kubeconfig()

    def setup_kubeconfig(self):
        if not os.path.exists(K3S_KUBECONFIG):
            raise InstallerError(f"K3s kubeconfig not found at {K3S_KUBECONFIG}.")
        kube_dir = os.path.join(os.path.expanduser("~"), ".kube")
        self.filesystem.ensure_dir(kube_dir, 0o700)
        target = os.path.join(kube_dir, "config")
        shutil.copyfile(K3S_KUBECONFIG, target)
        self.filesystem.set_permissions(target, SECRET_FILE_MODE)

    def install_helm(self, context: ServerContext):
        self._run_installer_script(HELM_INSTALL_URL, ["bash"])

    def install_istio(self, context: ServerContext):
        if not self.host.command_exists("istioctl"):
            self.install_istioctl()
        self.console.print("[blue]Installing Istio with the demo profile...[/blue]")
        self.runner.run(
            ["istioctl", "install", "--set", "profile=demo", "-y"], capture_output=True, timeout=900
        )

    def install_istioctl(self):
        work_dir = tempfile.mkdtemp(prefix="stackbill-istio-")
        try:
            script = os.path.join(work_dir, "downloadIstio")
            self.download.download_file(ISTIO_DOWNLOAD_URL, script, "Downloading Istio installer...")
            self.runner.run(
                ["sh", script],
                capture_output=True,
                env={"ISTIO_VERSION": ISTIO_VERSION},
                cwd=work_dir,
                timeout=600,
            )
            binary = os.path.join(work_dir, f"istio-{ISTIO_VERSION}", "bin", "istioctl")
            if not os.path.exists(binary):
                raise InstallerError(f"istioctl was not found in the Istio {ISTIO_VERSION} download.")
            target = os.path.join(BIN_DIR, "istioctl")
            shutil.move(binary, target)
            self.filesystem.set_permissions(target, BINARY_MODE)
        finally:
            self.filesystem.cleanup_dir(work_dir)

    def istio_ready(self) -> bool:
        return self.kube.pods_ready(ISTIO_NAMESPACE, "app=istiod") and self.kube.pods_ready(
            ISTIO_NAMESPACE, "app=istio-ingressgateway"
        )

    def set_default_storage_class(self, context: ServerContext):
        if not self.kube.resource_exists("storageclass", "local-path"):
            raise InstallerError("No default storage class found and 'local-path' is not available.")
        self.logger.info("Setting local-path as default storage class...")
        self.kube.kubectl(
            "patch",
            "storageclass",
            "local-path",
            "-p",
            '{"metadata": {"annotations":{"storageclass.kubernetes.io/is-default-class":"true"}}}',
        )

    def cluster_verified(self) -> bool:
        return self.kube.cluster_reachable() and self.host.command_exists("helm")

    def fail_verification(self, context: ServerContext):
        missing = []
        if not self.kube.cluster_reachable():
            missing.append("Kubernetes cluster is not reachable")
        if not self.host.command_exists("helm"):
            missing.append("helm is not installed")
        raise InstallerError("; ".join(missing) or "Kubernetes infrastructure is not ready")

    def _run_installer_script(self, url: str, interpreter: List[str], args=None, env=None):
        fd, script = tempfile.mkstemp(prefix="stackbill-installer-", suffix=".sh")
        os.close(fd)
        try:
            self.download.download_file(url, script, f"Downloading {os.path.basename(url)}...")
            self.runner.run(interpreter + [script] + list(args or []), capture_output=True, env=env, timeout=900)
        finally:
            self.filesystem.remove_file(script)
