"""Input validation for the StackBill installer.

Everything here is pure: no network, no external commands, no credential
store access. The only filesystem access is existence checks on the
certificate paths and reading the registry token file.
"""

import os
import re
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, Optional

from stackbillinstaller.constants import (
    DEFAULT_CHART_PATH,
    DEFAULT_NAMESPACE,
    DEFAULT_RELEASE_NAME,
    REGISTRY_TOKEN_ENV,
    REGISTRY_TOKEN_FILES,
    SERVICE_NAMES,
)
from stackbillinstaller.errors import (
    FileNotFound,
    MissingRequiredField,
    PrivilegeError,
    ValidationError,
)
from stackbillinstaller.errors_catalog import actionable_error
from stackbillinstaller.models import ServerContext

_DOMAIN_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")
_NAMESPACE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_PASSWORD_FORBIDDEN = re.compile(r"[\s'\"`\\$]")


def _default_euid() -> int:
    return os.geteuid() if hasattr(os, "geteuid") else 0


class ValidationService:
    """Validates raw user input and builds the run's ServerContext."""

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        token_files: Iterable[str] = REGISTRY_TOKEN_FILES,
        euid_provider: Callable[[], int] = _default_euid,
    ):
        self.environ = os.environ if environ is None else environ
        self.token_files = tuple(token_files)
        self.euid_provider = euid_provider

    def validate(
        self,
        domain: Optional[str],
        ssl_cert: Optional[str],
        ssl_key: Optional[str],
        ssl_ca: Optional[str] = None,
        namespace: Optional[str] = None,
        skip_infra: bool = False,
        skip_db: bool = False,
        password_overrides: Optional[Dict[str, Optional[str]]] = None,
        registry_token_file: Optional[str] = None,
        server_ip: Optional[str] = None,
        release_name: str = DEFAULT_RELEASE_NAME,
        chart_path: str = DEFAULT_CHART_PATH,
    ) -> ServerContext:
        self._require(domain, "--domain", "domain")
        self._require(ssl_cert, "--ssl-cert", "ssl_cert")
        self._require(ssl_key, "--ssl-key", "ssl_key")

        clean_domain = self.validate_domain(domain)
        self._require_file(ssl_cert, "SSL certificate")
        self._require_file(ssl_key, "SSL private key")
        if ssl_ca:
            self._require_file(ssl_ca, "SSL CA bundle")

        clean_namespace = self.validate_namespace(namespace or DEFAULT_NAMESPACE)
        overrides = self.validate_password_overrides(password_overrides or {})

        if not skip_db and self.euid_provider() != 0:
            raise PrivilegeError(actionable_error("privilege_required"))

        registry_token = self.resolve_registry_token(registry_token_file)

        return ServerContext(
            server_ip=server_ip or "",
            namespace=clean_namespace,
            domain=clean_domain,
            ssl_cert_path=os.path.abspath(ssl_cert),
            ssl_key_path=os.path.abspath(ssl_key),
            ssl_ca_path=os.path.abspath(ssl_ca) if ssl_ca else None,
            skip_infra=skip_infra,
            skip_db=skip_db,
            password_overrides=overrides,
            registry_token=registry_token,
            release_name=release_name,
            chart_path=chart_path,
        )

    def validate_domain(self, domain: str) -> str:
        clean = domain.strip().lower().rstrip(".")
        labels = clean.split(".")
        if len(clean) > 253 or len(labels) < 2 or not all(_DOMAIN_LABEL.match(label) for label in labels):
            raise ValidationError(actionable_error("invalid_domain", domain=domain))
        return clean

    def validate_namespace(self, namespace: str) -> str:
        clean = namespace.strip()
        if len(clean) > 63 or not _NAMESPACE.match(clean):
            raise ValidationError(actionable_error("invalid_namespace", namespace=namespace))
        return clean

    def validate_password_overrides(self, overrides: Dict[str, Optional[str]]) -> Dict[str, str]:
        clean: Dict[str, str] = {}
        for service, value in overrides.items():
            if service not in SERVICE_NAMES:
                raise ValidationError(f"Unknown service for password override: {service}")
            if value is None:
                continue
            if not value or _PASSWORD_FORBIDDEN.search(value):
                raise ValidationError(
                    f"Invalid --{service}-password: it must be non-empty and must not contain "
                    "whitespace, quotes, backslashes or '$'."
                )
            clean[service] = value
        return clean

    def resolve_registry_token(self, registry_token_file: Optional[str] = None) -> str:
        token = (self.environ.get(REGISTRY_TOKEN_ENV) or "").strip()
        if token:
            return token

        candidates = []
        if registry_token_file:
            self._require_file(registry_token_file, "Registry token")
            candidates.append(registry_token_file)
        candidates.extend(self.token_files)

        for candidate in candidates:
            path = Path(candidate)
            if not path.is_file():
                continue
            try:
                token = "".join(path.read_text(encoding="utf-8").split())
            except OSError:
                continue
            if token:
                return token

        raise ValidationError(actionable_error("registry_token_missing", env_var=REGISTRY_TOKEN_ENV))

    @staticmethod
    def _require(value: Optional[str], option: str, key: str):
        if value is None or not str(value).strip():
            raise MissingRequiredField(actionable_error("missing_required_field", option=option, key=key))

    @staticmethod
    def _require_file(path: str, label: str):
        if not Path(path).is_file():
            raise FileNotFound(actionable_error("file_not_found", label=label, path=path))
