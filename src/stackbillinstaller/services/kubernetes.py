"""kubectl and helm wrappers."""

import json
import socket
import subprocess
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from stackbillinstaller.errors import InstallerError


class KubernetesService:
    """Thin, typed layer over the cluster CLIs used by the provisioning steps."""

    def __init__(self, runner, logger, subprocess_module=subprocess):
        self.runner = runner
        self.logger = logger
        self.subprocess = subprocess_module

    def kubectl(self, *args: str, **kwargs) -> subprocess.CompletedProcess:
        kwargs.setdefault("capture_output", True)
        return self.runner.run(["kubectl"] + list(args), **kwargs)

    def cluster_reachable(self) -> bool:
        return self.runner.succeeds(["kubectl", "cluster-info"], timeout=20)

    def nodes_ready(self) -> bool:
        return self.runner.succeeds(
            ["kubectl", "wait", "--for=condition=ready", "node", "--all", "--timeout=5s"], timeout=20
        )

    def namespace_exists(self, namespace: str) -> bool:
        return self.runner.succeeds(["kubectl", "get", "namespace", namespace])

    def namespace_active(self, namespace: str) -> bool:
        phase = self.runner.output(
            ["kubectl", "get", "namespace", namespace, "-o", "jsonpath={.status.phase}"]
        )
        return phase == "Active"

    def namespace_labels(self, namespace: str) -> Dict[str, str]:
        data = self.get_json("namespace", namespace)
        if not data:
            return {}
        return data.get("metadata", {}).get("labels", {}) or {}

    def ensure_namespace(self, namespace: str):
        if not self.namespace_exists(namespace):
            self.kubectl("create", "namespace", namespace)
            self.logger.info("Namespace %s created", namespace)

    def label(self, kind: str, name: str, labels: Dict[str, str], namespace: Optional[str] = None):
        args = ["label", kind, name] + [f"{key}={value}" for key, value in labels.items()] + ["--overwrite"]
        if namespace:
            args += ["-n", namespace]
        self.kubectl(*args)

    def annotate(self, kind: str, name: str, annotations: Dict[str, str]):
        args = ["annotate", kind, name] + [f"{key}={value}" for key, value in annotations.items()]
        self.kubectl(*(args + ["--overwrite"]))

    def resource_exists(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        cmd = ["kubectl", "get", kind, name]
        if namespace:
            cmd += ["-n", namespace]
        return self.runner.succeeds(cmd)

    def get_json(
        self,
        kind: str,
        name: Optional[str] = None,
        namespace: Optional[str] = None,
        selector: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        cmd = ["kubectl", "get", kind]
        if name:
            cmd.append(name)
        if namespace:
            cmd += ["-n", namespace]
        if selector:
            cmd += ["-l", selector]
        raw = self.runner.output(cmd + ["-o", "json"])
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            self.logger.debug("Unparseable kubectl output for %s %s", kind, name or "")
            return None

    def apply_manifest(self, manifest: str):
        self.kubectl("apply", "-f", "-", input_text=manifest)

    def apply_generated(self, create_args: List[str]):
        """Idempotent create: render with ``--dry-run=client -o yaml`` and apply the result."""
        rendered = self.kubectl(*(create_args + ["--dry-run=client", "-o", "yaml"]))
        self.apply_manifest(rendered.stdout)

    def pods_ready(self, namespace: str, selector: Optional[str] = None, minimum: int = 1) -> bool:
        data = self.get_json("pods", namespace=namespace, selector=selector)
        if not data:
            return False
        pods = [pod for pod in data.get("items", []) if pod.get("status", {}).get("phase") != "Succeeded"]
        if len(pods) < minimum:
            return False
        for pod in pods:
            conditions = pod.get("status", {}).get("conditions", []) or []
            if not any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions):
                return False
        return True

    def pods_running(self, namespace: str, selector: str) -> bool:
        data = self.get_json("pods", namespace=namespace, selector=selector)
        if not data:
            return False
        return any(pod.get("status", {}).get("phase") == "Running" for pod in data.get("items", []))

    def first_pod_name(self, namespace: str, selector: str) -> Optional[str]:
        name = self.runner.output(
            [
                "kubectl",
                "get",
                "pods",
                "-n",
                namespace,
                "-l",
                selector,
                "-o",
                "jsonpath={.items[0].metadata.name}",
            ]
        )
        return name or None

    def default_storage_class(self) -> Optional[str]:
        data = self.get_json("storageclass")
        if not data:
            return None
        for item in data.get("items", []):
            annotations = item.get("metadata", {}).get("annotations", {}) or {}
            if annotations.get("storageclass.kubernetes.io/is-default-class") == "true":
                return item["metadata"]["name"]
        return None

    def helm(self, *args: str, **kwargs) -> subprocess.CompletedProcess:
        kwargs.setdefault("capture_output", True)
        return self.runner.run(["helm"] + list(args), **kwargs)

    def helm_release_values(self, release: str, namespace: str) -> Optional[Dict[str, Any]]:
        raw = self.runner.output(["helm", "get", "values", release, "-n", namespace, "-o", "json"])
        if not raw:
            return None
        try:
            values = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return values if isinstance(values, dict) else None

    def helm_release_status(self, release: str, namespace: str) -> Optional[Dict[str, Any]]:
        raw = self.runner.output(["helm", "status", release, "-n", namespace, "-o", "json"])
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    @contextmanager
    def port_forward(
        self,
        target: str,
        namespace: str,
        local_port: int,
        remote_port: int,
        settle_seconds: float = 15.0,
    ) -> Iterator[str]:
        """Forward ``localhost:local_port`` to ``target`` for the duration of the block."""
        cmd = ["kubectl", "port-forward", target, f"{local_port}:{remote_port}", "-n", namespace]
        self.logger.debug("Executing: %s", " ".join(cmd))
        try:
            process = self.subprocess.Popen(
                cmd, stdout=self.subprocess.DEVNULL, stderr=self.subprocess.DEVNULL
            )
        except OSError as exc:
            raise InstallerError(f"Could not start port-forward to {target}: {exc}") from exc

        try:
            deadline = time.monotonic() + settle_seconds
            while time.monotonic() < deadline:
                if process.poll() is not None:
                    raise InstallerError(f"Port-forward to {target} exited early.")
                if self._port_open(local_port):
                    break
                time.sleep(0.5)
            yield f"http://127.0.0.1:{local_port}"
        finally:
            process.terminate()
            try:
                process.wait(timeout=5)
            except self.subprocess.TimeoutExpired:
                process.kill()

    @staticmethod
    def _port_open(port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(0.5)
            return sock.connect_ex(("127.0.0.1", port)) == 0
