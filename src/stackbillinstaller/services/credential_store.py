"""Credential record persistence with idempotent reuse across runs.

The record is a flat, human-readable text file::

    ================================================================================
    STACKBILL CREDENTIALS
    ================================================================================
    Schema-Version: 1
    Generated: 2026-01-01T00:00:00+00:00
    Domain: portal.example.com

    MYSQL:
      Host: 10.0.0.5
      Port: 3306
      Database: stackbill
      Username: stackbill
      Password: <secret>

    NFS:
      Server: 10.0.0.5
      Path: /data/stackbill

Banner lines (``=`` rules, the title) and ``#`` comments are ignored. Anything
else that does not fit the schema raises ``CredentialRecordError``; a corrupt
line never turns into an empty password.
"""

import os
import secrets
import string
import tempfile
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from stackbillinstaller.constants import (
    MONGODB_DATABASE,
    MONGODB_PORT,
    MYSQL_DATABASE,
    MYSQL_PORT,
    NFS_EXPORT_PATH,
    PASSWORD_LENGTH,
    RABBITMQ_PORT,
    RABBITMQ_VHOST,
    SECRET_FILE_MODE,
    SERVICE_USERNAME,
)
from stackbillinstaller.errors import CredentialRecordError, InstallerError
from stackbillinstaller.errors_catalog import actionable_error
from stackbillinstaller.models import CredentialRecord, NfsExport, ServerContext, ServiceCredential

TITLE = "STACKBILL CREDENTIALS"
RULE = "=" * 80
SERVICE_SECTIONS = {"MYSQL": "mysql", "MONGODB": "mongodb", "RABBITMQ": "rabbitmq"}
SERVICE_FIELDS = ("Host", "Port", "Database", "Username", "Password")
NFS_FIELDS = ("Server", "Path")
HEADER_FIELDS = ("Schema-Version", "Generated", "Domain")
SERVICE_DEFAULTS = {
    "mysql": (MYSQL_PORT, MYSQL_DATABASE),
    "mongodb": (MONGODB_PORT, MONGODB_DATABASE),
    "rabbitmq": (RABBITMQ_PORT, RABBITMQ_VHOST),
}
ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


class CredentialStore:
    """Owns the credentials file: load, reuse or regenerate, persist, purge."""

    SCHEMA_VERSION = 1

    def __init__(self, path: str, logger):
        self.path = path
        self.logger = logger
        self.reused = False
        self._loaded: Optional[CredentialRecord] = None

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def load(self) -> Optional[CredentialRecord]:
        if not self.exists():
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as file_obj:
                text = file_obj.read()
        except OSError as exc:
            raise CredentialRecordError(
                actionable_error("corrupt_credentials", path=self.path, detail=str(exc))
            ) from exc

        return self.parse(text)

    def parse(self, text: str) -> CredentialRecord:
        header: Dict[str, str] = {}
        sections: Dict[str, Dict[str, str]] = {}
        current: Optional[str] = None

        for number, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.rstrip()
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or stripped == TITLE or set(stripped) == {"="}:
                continue

            key, sep, value = stripped.partition(":")
            if not sep:
                self._fail(f"line {number} is not a 'Key: value' pair")
            key = key.strip()
            value = value.strip()
            indented = line[:1].isspace()

            if not indented:
                if key in SERVICE_SECTIONS or key == "NFS":
                    if value:
                        self._fail(f"line {number}: section header '{key}' must not carry a value")
                    if key in sections:
                        self._fail(f"line {number}: duplicate section '{key}'")
                    sections[key] = {}
                    current = key
                    continue
                if key not in HEADER_FIELDS:
                    self._fail(f"line {number}: unknown field '{key}'")
                header[key] = value
                current = None
                continue

            if current is None:
                self._fail(f"line {number}: field '{key}' outside of a section")
            allowed = NFS_FIELDS if current == "NFS" else SERVICE_FIELDS
            if key not in allowed:
                self._fail(f"line {number}: unknown field '{key}' in section '{current}'")
            sections[current][key] = value

        version = header.get("Schema-Version")
        if version != str(self.SCHEMA_VERSION):
            self._fail(f"unsupported schema version '{version}'")
        if not header.get("Domain"):
            self._fail("missing 'Domain'")

        services: Dict[str, ServiceCredential] = {}
        for section, service in SERVICE_SECTIONS.items():
            if section in sections:
                services[service] = self._parse_service(section, sections[section])

        nfs_fields = sections.get("NFS", {})
        missing_nfs = [name for name in NFS_FIELDS if not nfs_fields.get(name)]
        if missing_nfs:
            self._fail(f"section 'NFS' is missing {', '.join(missing_nfs)}")

        return CredentialRecord(
            domain=header["Domain"],
            services=services,
            nfs=NfsExport(server=nfs_fields["Server"], path=nfs_fields["Path"]),
            generated_at=header.get("Generated", ""),
            schema_version=self.SCHEMA_VERSION,
        )

    def load_or_generate(self, service_names: Iterable[str]) -> Dict[str, str]:
        """Reuse every secret from a complete record, otherwise regenerate all of them."""
        names = list(service_names)
        self.reused = False

        try:
            record = self.load()
        except CredentialRecordError as exc:
            self.logger.warning("%s Regenerating all passwords.", exc)
            record = None

        if record is not None:
            missing = [
                name for name in names if name not in record.services or not record.services[name].password
            ]
            if not missing:
                self._loaded = record
                self.reused = True
                self.logger.info("Loaded existing passwords from %s", self.path)
                self.logger.info("  (To generate new passwords, delete %s and re-run)", self.path)
                return {name: record.services[name].password for name in names}
            self.logger.warning(
                "Credentials file %s is incomplete (missing: %s). Regenerating all passwords.",
                self.path,
                ", ".join(missing),
            )

        self._loaded = None
        self.logger.info("Generating new passwords...")
        return {name: generate_password() for name in names}

    def resolve(
        self, service_names: Iterable[str], overrides: Optional[Dict[str, str]] = None
    ) -> Tuple[Dict[str, str], List[str]]:
        """Secrets for this run plus the names whose value came from an explicit override."""
        resolved = self.load_or_generate(service_names)
        overridden = []
        for name, value in (overrides or {}).items():
            if name in resolved and value:
                resolved[name] = value
                overridden.append(name)
                self.logger.info("%s password: [user-provided]", name)
        return resolved, overridden

    def build_record(self, context: ServerContext, resolved: Dict[str, str]) -> CredentialRecord:
        services = {}
        for name, password in resolved.items():
            port, database = SERVICE_DEFAULTS[name]
            services[name] = ServiceCredential(
                host=context.server_ip,
                port=port,
                database=database,
                username=SERVICE_USERNAME,
                password=password,
            )

        generated_at = self._now()
        if self.reused and self._loaded is not None and self._loaded.generated_at:
            generated_at = self._loaded.generated_at

        return CredentialRecord(
            domain=context.domain,
            services=services,
            nfs=NfsExport(server=context.server_ip, path=NFS_EXPORT_PATH),
            generated_at=generated_at,
            schema_version=self.SCHEMA_VERSION,
        )

    def render(self, record: CredentialRecord) -> str:
        lines = [
            RULE,
            TITLE,
            RULE,
            f"Schema-Version: {record.schema_version}",
            f"Generated: {record.generated_at}",
            f"Domain: {record.domain}",
        ]
        for section, service in SERVICE_SECTIONS.items():
            credential = record.services.get(service)
            if credential is None:
                continue
            lines.extend(
                [
                    "",
                    f"{section}:",
                    f"  Host: {credential.host}",
                    f"  Port: {credential.port}",
                    f"  Database: {credential.database}",
                    f"  Username: {credential.username}",
                    f"  Password: {credential.password}",
                ]
            )
        lines.extend(["", "NFS:", f"  Server: {record.nfs.server}", f"  Path: {record.nfs.path}", ""])
        return "\n".join(lines)

    def persist(self, record: CredentialRecord):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(prefix=".stackbill-credentials-", suffix=".txt", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(self.render(record))
            os.chmod(temp_path, SECRET_FILE_MODE)
            os.replace(temp_path, self.path)
        except OSError as exc:
            raise InstallerError(f"Could not write credentials file '{self.path}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

        self.logger.info("Credentials saved to: %s", self.path)

    def purge(self) -> bool:
        if not self.exists():
            return False
        os.remove(self.path)
        self.logger.info("Removed credentials file: %s", self.path)
        return True

    def _parse_service(self, section: str, fields: Dict[str, str]) -> ServiceCredential:
        missing = [name for name in SERVICE_FIELDS if not fields.get(name)]
        if missing:
            self._fail(f"section '{section}' is missing {', '.join(missing)}")
        try:
            port = int(fields["Port"])
        except ValueError:
            self._fail(f"section '{section}' has a non-numeric port '{fields['Port']}'")
        return ServiceCredential(
            host=fields["Host"],
            port=port,
            database=fields["Database"],
            username=fields["Username"],
            password=fields["Password"],
        )

    def _fail(self, detail: str):
        raise CredentialRecordError(actionable_error("corrupt_credentials", path=self.path, detail=detail))

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
