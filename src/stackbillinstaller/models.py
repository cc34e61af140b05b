"""Shared domain models for the StackBill installer."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


@dataclass(frozen=True)
class ServiceCredential:
    host: str
    port: int
    database: str
    username: str
    password: str


@dataclass(frozen=True)
class NfsExport:
    server: str
    path: str


@dataclass(frozen=True)
class CredentialRecord:
    """Connection details and secrets for every provisioned service."""

    domain: str
    services: Dict[str, ServiceCredential]
    nfs: NfsExport
    generated_at: str
    schema_version: int = 1

    def secrets(self) -> Dict[str, str]:
        return {name: credential.password for name, credential in self.services.items()}


@dataclass(frozen=True)
class ServerContext:
    """Run-time facts resolved once at the start of a run and shared by every step."""

    server_ip: str
    namespace: str
    domain: str
    ssl_cert_path: str
    ssl_key_path: str
    ssl_ca_path: Optional[str] = None
    skip_infra: bool = False
    skip_db: bool = False
    password_overrides: Dict[str, str] = field(default_factory=dict)
    registry_token: Optional[str] = None
    release_name: str = "stackbill"
    chart_path: str = "."
    credentials: Optional[CredentialRecord] = None

    @property
    def skipped_groups(self) -> List[str]:
        groups = []
        if self.skip_infra:
            groups.append("infra")
        if self.skip_db:
            groups.append("db")
        return groups

    def secret_values(self) -> List[str]:
        values = [value for value in self.password_overrides.values() if value]
        if self.credentials:
            values.extend(self.credentials.secrets().values())
        if self.registry_token:
            values.append(self.registry_token)
        return values


StepCallable = Callable[[ServerContext], Any]
StepPredicate = Callable[[ServerContext], bool]


@dataclass
class ProvisioningStep:
    """A unit of the provisioning pipeline, constructed fresh for every run."""

    name: str
    apply: StepCallable
    idempotency_check: StepPredicate
    readiness_check: Optional[StepPredicate] = None
    timeout: float = 60.0
    poll_interval: float = 2.0
    critical: bool = False
    skip_group: Optional[str] = None
    description: str = ""
    remediation: str = "Inspect the log output above, fix the cause and re-run the installer."

    @property
    def skippable(self) -> bool:
        return self.skip_group is not None


class StepStatus(str, Enum):
    SKIPPED = "skipped"
    ALREADY_SATISFIED = "already_satisfied"
    APPLIED = "applied"
    DEGRADED_WARNING = "degraded_warning"
    FATAL_ERROR = "fatal_error"


@dataclass(frozen=True)
class StepResult:
    name: str
    status: StepStatus
    message: str = ""
    remediation: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FATAL_ERROR


@dataclass(frozen=True)
class WaitResult:
    """Outcome of a bounded readiness wait. ``ready`` is False on timeout."""

    ready: bool
    attempts: int
    elapsed: float
    reason: str = ""


@dataclass(frozen=True)
class DeploymentHandle:
    release: str
    namespace: str
    chart: str
    revision: Optional[int] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class HandshakeOutcome:
    configured: bool
    strategy: Optional[str] = None
    endpoint: Optional[str] = None
    attempts: int = 0
    exhausted: bool = False
    message: str = ""
