"""Static defaults shared across installer services."""

import os

DIR_MODE = 0o755
FILE_MODE = 0o644
SECRET_FILE_MODE = 0o600
BINARY_MODE = 0o755
NFS_DIR_MODE = 0o777

DEFAULT_NAMESPACE = "sb-system"
APPS_NAMESPACE = "sb-apps"
DEFAULT_RELEASE_NAME = "stackbill"
DEFAULT_CHART_PATH = "."
DEFAULT_CREDENTIALS_FILE = os.path.join(os.path.expanduser("~"), "stackbill-credentials.txt")
DEFAULT_MANIFEST_FILE = os.path.join(os.path.expanduser("~"), ".stackbill", "run-manifest.json")

REGISTRY_TOKEN_ENV = "STACKBILL_REGISTRY_TOKEN"
REGISTRY_TOKEN_FILES = (
    "/etc/stackbill/ecr-token",
    os.path.join(os.path.expanduser("~"), ".stackbill", "ecr-token"),
)
REGISTRY_SERVER = "730335576030.dkr.ecr.ap-south-1.amazonaws.com"
REGISTRY_SECRET_NAME = "awscred"
TLS_SECRET_NAME = "stackbill-tls"
GATEWAY_NAME = "stackbill-gateway"

K3S_VERSION = "v1.29.0+k3s1"
ISTIO_VERSION = "1.20.3"
K3S_INSTALL_URL = "https://get.k3s.io"
HELM_INSTALL_URL = "https://raw.githubusercontent.com/helm/helm/main/scripts/get-helm-3"
ISTIO_DOWNLOAD_URL = "https://istio.io/downloadIstio"
KUBECTL_STABLE_URL = "https://dl.k8s.io/release/stable.txt"
KUBECTL_BINARY_URL = "https://dl.k8s.io/release/{version}/bin/linux/amd64/kubectl"
K3S_KUBECONFIG = "/etc/rancher/k3s/k3s.yaml"
BIN_DIR = "/usr/local/bin"

PASSWORD_LENGTH = 16
SERVICE_USERNAME = "stackbill"
MYSQL_PORT = 3306
MONGODB_PORT = 27017
RABBITMQ_PORT = 5672
RABBITMQ_MANAGEMENT_PORT = 15672
MYSQL_DATABASE = "stackbill"
MONGODB_DATABASE = "stackbill_usage"
RABBITMQ_VHOST = "/"
SERVICE_NAMES = ("mysql", "mongodb", "rabbitmq")

NFS_EXPORT_PATH = "/data/stackbill"
NFS_EXPORTS_FILE = "/etc/exports"
NFS_EXPORT_OPTIONS = "*(rw,sync,no_subtree_check,no_root_squash)"

INGRESS_HTTP_NODE_PORT = 31331
INGRESS_HTTPS_NODE_PORT = 31332
CONTROLLER_LABEL = "app=sb-deployment-controller"
CONTROLLER_SERVICE = "sb-deployment-controller"
CONTROLLER_CONTAINER_PORT = 3000
CONTROLLER_LOCAL_PORT = 8888
APP_CONFIG_MAP = "stackbill-app-config"
AUTO_CREDENTIALS_SECRET = "stackbill-auto-credentials"

APT_LOCK_FILES = (
    "/var/lib/dpkg/lock-frontend",
    "/var/lib/apt/lists/lock",
    "/var/cache/apt/archives/lock",
)

# Readiness timeouts and poll intervals, in seconds.
APT_LOCK_TIMEOUT = 300
APT_LOCK_POLL = 5
SERVICE_READY_TIMEOUT = 60
SERVICE_READY_POLL = 2
NODE_READY_TIMEOUT = 120
MESH_READY_TIMEOUT = 300
NAMESPACE_READY_TIMEOUT = 30
POD_READY_POLL = 5
APP_READY_TIMEOUT = 600
APP_READY_POLL = 10
DEFAULT_RUN_TIMEOUT_MINUTES = 90

MIN_CPU_CORES = 4
MIN_MEMORY_GB = 8
MIN_DISK_GB = 50
