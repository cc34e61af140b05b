"""Deployment preparation steps and the Helm deployment trigger."""

import base64
import json
from typing import Any, Dict, List, Optional

import yaml

from stackbillinstaller.constants import (
    APP_CONFIG_MAP,
    APP_READY_POLL,
    APP_READY_TIMEOUT,
    APPS_NAMESPACE,
    AUTO_CREDENTIALS_SECRET,
    CONTROLLER_CONTAINER_PORT,
    CONTROLLER_LABEL,
    CONTROLLER_LOCAL_PORT,
    CONTROLLER_SERVICE,
    GATEWAY_NAME,
    INGRESS_HTTP_NODE_PORT,
    INGRESS_HTTPS_NODE_PORT,
    MONGODB_DATABASE,
    MONGODB_PORT,
    MYSQL_DATABASE,
    MYSQL_PORT,
    NAMESPACE_READY_TIMEOUT,
    NFS_EXPORT_PATH,
    RABBITMQ_PORT,
    REGISTRY_SECRET_NAME,
    REGISTRY_SERVER,
    SERVICE_USERNAME,
    TLS_SECRET_NAME,
)
from stackbillinstaller.errors import InstallerError
from stackbillinstaller.models import DeploymentHandle, HandshakeOutcome, ProvisioningStep, ServerContext

HELM_OWNER_LABELS = {"app.kubernetes.io/managed-by": "Helm"}
ISTIO_INJECTION_LABELS = {"istio-injection": "enabled"}
INGRESS_SERVICE = "istio-ingressgateway"
INGRESS_NAMESPACE = "istio-system"

GATEWAY_TEMPLATE = """apiVersion: networking.istio.io/v1beta1
kind: Gateway
metadata:
  name: {name}
  namespace: {namespace}
spec:
  selector:
    istio: ingressgateway
  servers:
  - port:
      number: 80
      name: http
      protocol: HTTP
    hosts:
    - "{domain}"
    - "*"
  - port:
      number: 443
      name: https
      protocol: HTTPS
    tls:
      mode: SIMPLE
      credentialName: {tls_secret}
    hosts:
    - "{domain}"
    - "*"
"""


def _read_text(path: Optional[str]) -> str:
    if not path:
        return ""
    with open(path, "r", encoding="utf-8") as file_obj:
        return file_obj.read()


def _b64_file(path: str) -> str:
    with open(path, "rb") as file_obj:
        return base64.b64encode(file_obj.read()).decode("ascii")


class DeploymentPrepSteps:
    """Cluster objects the Helm chart expects to exist before it is installed."""

    def __init__(self, kube, logger, console):
        self.kube = kube
        self.logger = logger
        self.console = console

    def build(self) -> List[ProvisioningStep]:
        return [
            ProvisioningStep(
                name="setup_namespaces",
                description="Setting up Kubernetes namespaces",
                idempotency_check=self.namespaces_configured,
                apply=self.setup_namespaces,
                readiness_check=self.namespaces_active,
                timeout=NAMESPACE_READY_TIMEOUT,
                remediation="Check `kubectl get namespaces` and your cluster permissions.",
            ),
            ProvisioningStep(
                name="create_tls_secret",
                description="Creating TLS secret",
                idempotency_check=self.tls_secret_current,
                apply=self.create_tls_secret,
                readiness_check=lambda ctx: self.kube.resource_exists("secret", TLS_SECRET_NAME, ctx.namespace),
                timeout=30,
                critical=True,
                remediation="Check that --ssl-cert and --ssl-key form a valid PEM key pair.",
            ),
            ProvisioningStep(
                name="create_registry_secret",
                description="Creating image pull secret",
                idempotency_check=self.registry_secret_current,
                apply=self.create_registry_secret,
                timeout=30,
                remediation="Refresh the registry token and re-run the installer.",
            ),
            ProvisioningStep(
                name="create_gateway",
                description="Creating Istio gateway",
                idempotency_check=self.gateway_current,
                apply=self.create_gateway,
                readiness_check=lambda ctx: self.kube.resource_exists("gateway", GATEWAY_NAME, ctx.namespace),
                timeout=30,
                remediation="Check that the Istio CRDs are installed (`kubectl get crd gateways.networking.istio.io`).",
            ),
            ProvisioningStep(
                name="expose_nodeport",
                description="Exposing the ingress gateway on NodePorts",
                idempotency_check=self.nodeports_configured,
                apply=self.expose_nodeports,
                timeout=30,
                remediation=f"Patch `svc/{INGRESS_SERVICE}` in {INGRESS_NAMESPACE} to type NodePort manually.",
            ),
        ]

    def _namespaces(self, context: ServerContext) -> List[str]:
        names = [context.namespace]
        if APPS_NAMESPACE not in names:
            names.append(APPS_NAMESPACE)
        return names

    def namespaces_configured(self, context: ServerContext) -> bool:
        for namespace in self._namespaces(context):
            labels = self.kube.namespace_labels(namespace)
            if labels.get("istio-injection") != "enabled":
                return False
        labels = self.kube.namespace_labels(context.namespace)
        return labels.get("app.kubernetes.io/managed-by") == "Helm"

    def namespaces_active(self, context: ServerContext) -> bool:
        return all(self.kube.namespace_active(namespace) for namespace in self._namespaces(context))

    def setup_namespaces(self, context: ServerContext):
        for namespace in self._namespaces(context):
            self.kube.ensure_namespace(namespace)
            self.kube.label("namespace", namespace, ISTIO_INJECTION_LABELS)
        self.kube.label("namespace", context.namespace, HELM_OWNER_LABELS)
        self.kube.annotate(
            "namespace",
            context.namespace,
            {
                "meta.helm.sh/release-name": context.release_name,
                "meta.helm.sh/release-namespace": context.namespace,
            },
        )
        self.logger.info("Namespaces configured with Istio and Helm labels")

    def tls_secret_current(self, context: ServerContext) -> bool:
        secret = self.kube.get_json("secret", TLS_SECRET_NAME, namespace=context.namespace)
        if not secret:
            return False
        data = secret.get("data", {}) or {}
        return data.get("tls.crt") == _b64_file(context.ssl_cert_path) and data.get("tls.key") == _b64_file(
            context.ssl_key_path
        )

    def create_tls_secret(self, context: ServerContext):
        self.kube.apply_generated(
            [
                "create",
                "secret",
                "tls",
                TLS_SECRET_NAME,
                f"--cert={context.ssl_cert_path}",
                f"--key={context.ssl_key_path}",
                f"--namespace={context.namespace}",
            ]
        )
        self.logger.info("TLS secret '%s' created", TLS_SECRET_NAME)

    def registry_secret_current(self, context: ServerContext) -> bool:
        for namespace in self._namespaces(context):
            secret = self.kube.get_json("secret", REGISTRY_SECRET_NAME, namespace=namespace)
            if not secret:
                return False
            encoded = (secret.get("data", {}) or {}).get(".dockerconfigjson", "")
            try:
                config = json.loads(base64.b64decode(encoded).decode("utf-8"))
            except (ValueError, UnicodeDecodeError):
                return False
            auth = config.get("auths", {}).get(REGISTRY_SERVER, {})
            if auth.get("password") != context.registry_token:
                return False
        return True

    @staticmethod
    def registry_secret_manifest(token: str, namespace: str) -> str:
        """Pull secret document, applied through stdin so the token never reaches argv."""
        auth = base64.b64encode(f"AWS:{token}".encode("utf-8")).decode("ascii")
        docker_config = {"auths": {REGISTRY_SERVER: {"username": "AWS", "password": token, "auth": auth}}}
        encoded = base64.b64encode(json.dumps(docker_config).encode("utf-8")).decode("ascii")
        secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "kubernetes.io/dockerconfigjson",
            "metadata": {"name": REGISTRY_SECRET_NAME, "namespace": namespace},
            "data": {".dockerconfigjson": encoded},
        }
        return yaml.safe_dump(secret, default_flow_style=False)

    def create_registry_secret(self, context: ServerContext):
        if not context.registry_token:
            raise InstallerError("No registry token available for the image pull secret.")
        for namespace in self._namespaces(context):
            self.kube.apply_manifest(self.registry_secret_manifest(context.registry_token, namespace))
        namespaces = ", ".join(self._namespaces(context))
        self.logger.info("Image pull secret '%s' created in %s", REGISTRY_SECRET_NAME, namespaces)

    def gateway_current(self, context: ServerContext) -> bool:
        gateway = self.kube.get_json("gateway", GATEWAY_NAME, namespace=context.namespace)
        if not gateway:
            return False
        servers = gateway.get("spec", {}).get("servers", []) or []
        return bool(servers) and all(context.domain in server.get("hosts", []) for server in servers)

    def create_gateway(self, context: ServerContext):
        self.kube.apply_manifest(
            GATEWAY_TEMPLATE.format(
                name=GATEWAY_NAME, namespace=context.namespace, domain=context.domain, tls_secret=TLS_SECRET_NAME
            )
        )
        self.logger.info("Istio gateway '%s' applied", GATEWAY_NAME)

    def nodeports_configured(self, context: ServerContext) -> bool:
        service = self.kube.get_json("service", INGRESS_SERVICE, namespace=INGRESS_NAMESPACE)
        if not service:
            return False
        spec = service.get("spec", {})
        ports = spec.get("ports", []) or []
        if spec.get("type") != "NodePort" or len(ports) < 2:
            return False
        return (
            ports[0].get("nodePort") == INGRESS_HTTP_NODE_PORT
            and ports[1].get("nodePort") == INGRESS_HTTPS_NODE_PORT
        )

    def expose_nodeports(self, context: ServerContext):
        patch = [
            {"op": "replace", "path": "/spec/type", "value": "NodePort"},
            {"op": "add", "path": "/spec/ports/0/nodePort", "value": INGRESS_HTTP_NODE_PORT},
            {"op": "add", "path": "/spec/ports/1/nodePort", "value": INGRESS_HTTPS_NODE_PORT},
        ]
        self.kube.kubectl(
            "patch", "svc", INGRESS_SERVICE, "-n", INGRESS_NAMESPACE, "--type=json", "-p", json.dumps(patch)
        )
        self.logger.info(
            "Ingress gateway exposed on NodePorts %s (HTTP) and %s (HTTPS)",
            INGRESS_HTTP_NODE_PORT,
            INGRESS_HTTPS_NODE_PORT,
        )


class DeploymentTrigger:
    """Installs or upgrades the StackBill Helm release and hands the controller its configuration."""

    def __init__(self, kube, filesystem, handshake, logger, console):
        self.kube = kube
        self.filesystem = filesystem
        self.handshake = handshake
        self.logger = logger
        self.console = console
        self.handle: Optional[DeploymentHandle] = None

    def desired_values(self, context: ServerContext, secrets: Dict[str, str]) -> Dict[str, Any]:
        host = context.server_ip
        ssl = {
            "certificate": _read_text(context.ssl_cert_path),
            "privateKey": _read_text(context.ssl_key_path),
        }
        if context.ssl_ca_path:
            ssl["caCertificate"] = _read_text(context.ssl_ca_path)

        return {
            "global": {"mode": "poc"},
            "domain": {"name": context.domain},
            "ssl": ssl,
            "mysql": {"enabled": False},
            "mongodb": {"enabled": False},
            "rabbitmq": {"enabled": False},
            "external": {
                "mysql": {
                    "host": host,
                    "port": MYSQL_PORT,
                    "database": MYSQL_DATABASE,
                    "username": SERVICE_USERNAME,
                    "password": secrets.get("mysql", ""),
                },
                "mongodb": {
                    "host": host,
                    "port": MONGODB_PORT,
                    "database": MONGODB_DATABASE,
                    "username": SERVICE_USERNAME,
                    "password": secrets.get("mongodb", ""),
                },
                "rabbitmq": {
                    "host": host,
                    "port": RABBITMQ_PORT,
                    "username": SERVICE_USERNAME,
                    "password": secrets.get("rabbitmq", ""),
                },
                "nfs": {"server": host, "path": NFS_EXPORT_PATH},
            },
            "nfs": {"provisioner": {"enabled": False}},
        }

    def is_current(self, context: ServerContext, secrets: Dict[str, str]) -> bool:
        status = self.kube.helm_release_status(context.release_name, context.namespace)
        if not status or status.get("info", {}).get("status") != "deployed":
            return False
        current = self.kube.helm_release_values(context.release_name, context.namespace)
        return current == self.desired_values(context, secrets)

    def deploy(self, context: ServerContext, secrets: Dict[str, str]) -> DeploymentHandle:
        chart = context.chart_path
        self.logger.info("Updating Helm chart dependencies...")
        updated = self.kube.helm("dependency", "update", chart, check=False)
        if updated.returncode != 0:
            self.kube.helm("dependency", "build", chart)

        values = yaml.safe_dump(self.desired_values(context, secrets), default_flow_style=False)
        values_path = self.filesystem.write_private_temp(values, prefix="stackbill-values-", suffix=".yaml")
        try:
            self.console.print(f"[blue]Deploying release '{context.release_name}' from {chart}...[/blue]")
            self.kube.helm(
                "upgrade",
                "--install",
                context.release_name,
                chart,
                "--namespace",
                context.namespace,
                "--timeout",
                f"{APP_READY_TIMEOUT}s",
                "-f",
                values_path,
                timeout=APP_READY_TIMEOUT + 60,
            )
        finally:
            self.filesystem.remove_file(values_path)

        status = self.kube.helm_release_status(context.release_name, context.namespace) or {}
        self.handle = DeploymentHandle(
            release=context.release_name,
            namespace=context.namespace,
            chart=chart,
            revision=status.get("version"),
            status=status.get("info", {}).get("status"),
        )
        self.logger.info(
            "Release %s at revision %s (%s)", self.handle.release, self.handle.revision, self.handle.status
        )
        return self.handle

    def controller_ready(self, context: ServerContext) -> bool:
        return self.kube.pods_ready(context.namespace, CONTROLLER_LABEL)

    def application_ready(self, context: ServerContext) -> bool:
        return self.kube.pods_ready(context.namespace)

    def wait_for_application(self, context: ServerContext):
        self.logger.info("Waiting for all pods in %s to become ready...", context.namespace)

    def missing_resources(self, context: ServerContext) -> List[str]:
        missing = []
        if not self.kube.get_json("configmap", APP_CONFIG_MAP, namespace=context.namespace):
            missing.append(f"configmap/{APP_CONFIG_MAP}")
        secret = self.kube.get_json("secret", AUTO_CREDENTIALS_SECRET, namespace=context.namespace)
        if not secret:
            missing.append(f"secret/{AUTO_CREDENTIALS_SECRET}")
        else:
            encoded = (secret.get("data", {}) or {}).get("MYSQL_HOST", "")
            try:
                mysql_host = base64.b64decode(encoded).decode("utf-8")
            except (ValueError, UnicodeDecodeError):
                mysql_host = ""
            if mysql_host != context.server_ip:
                missing.append(f"MYSQL_HOST={context.server_ip} in secret/{AUTO_CREDENTIALS_SECRET}")
        if not self.kube.pods_running(context.namespace, CONTROLLER_LABEL):
            missing.append(f"running pod {CONTROLLER_LABEL}")
        return missing

    def verify_deployment(self, context: ServerContext):
        missing = self.missing_resources(context)
        if missing:
            raise InstallerError("Deployment is incomplete, missing: " + ", ".join(missing))

    def build_steps(self) -> List[ProvisioningStep]:
        return [
            ProvisioningStep(
                name="deploy_stackbill",
                description="Deploying StackBill",
                idempotency_check=lambda ctx: self.is_current(ctx, self._secrets(ctx)),
                apply=lambda ctx: self.deploy(ctx, self._secrets(ctx)),
                readiness_check=self.controller_ready,
                timeout=APP_READY_TIMEOUT,
                poll_interval=APP_READY_POLL,
                remediation=f"Check `kubectl get pods -n <namespace> -l {CONTROLLER_LABEL}` and the pod logs.",
            ),
            ProvisioningStep(
                name="wait_for_pods",
                description="Waiting for application pods",
                idempotency_check=self.application_ready,
                apply=self.wait_for_application,
                readiness_check=self.application_ready,
                timeout=APP_READY_TIMEOUT,
                poll_interval=APP_READY_POLL,
                remediation="Check `kubectl get pods -n <namespace>` for pods stuck in Pending or CrashLoopBackOff.",
            ),
            ProvisioningStep(
                name="verify_deployment",
                description="Verifying deployment",
                idempotency_check=lambda ctx: not self.missing_resources(ctx),
                apply=self.verify_deployment,
                remediation="Check `kubectl get configmap,secret -n <namespace>` and the controller logs.",
            ),
        ]

    def configure_controller(self, context: ServerContext, secrets: Dict[str, str]) -> HandshakeOutcome:
        """Never raises; every failure becomes an exhausted outcome."""
        pod = self.kube.first_pod_name(context.namespace, CONTROLLER_LABEL)
        targets = []
        if pod:
            targets.append((f"pod/{pod}", CONTROLLER_CONTAINER_PORT))
        targets.append((f"svc/{CONTROLLER_SERVICE}", 80))

        for target, remote_port in targets:
            try:
                with self.kube.port_forward(target, context.namespace, CONTROLLER_LOCAL_PORT, remote_port) as base_url:
                    self.logger.info("Sending configuration to the controller through %s...", target)
                    return self.handshake.attempt(base_url, context, secrets)
            except InstallerError as exc:
                self.logger.warning("Port-forward to %s failed: %s", target, exc)

        return HandshakeOutcome(configured=False, exhausted=True, message="Controller API was not reachable.")

    @staticmethod
    def _secrets(context: ServerContext) -> Dict[str, str]:
        if context.credentials is None:
            raise InstallerError("Credentials were not resolved before deployment.")
        return context.credentials.secrets()
