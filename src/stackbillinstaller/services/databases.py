"""Host database steps: MySQL, MongoDB and RabbitMQ.

Each step's idempotency check authenticates with the credentials resolved for
this run, so a service that is running with a different password is
reconfigured rather than reported as satisfied.
"""

import glob
import os
import tempfile
from typing import List, Optional

from stackbillinstaller.constants import (
    DIR_MODE,
    FILE_MODE,
    MONGODB_DATABASE,
    MONGODB_PORT,
    MYSQL_DATABASE,
    RABBITMQ_VHOST,
    SERVICE_READY_POLL,
    SERVICE_READY_TIMEOUT,
    SERVICE_USERNAME,
)
from stackbillinstaller.errors import InstallerError
from stackbillinstaller.models import ProvisioningStep, ServerContext

MYSQL_UNITS = ("mysql", "mysqld")
MYSQL_CONFIG = "/etc/mysql/mysql.conf.d/mysqld.cnf"

MONGODB_UNIT = "mongod"
MONGODB_CONFIG = "/etc/mongod.conf"
MONGODB_KEY_URL = "https://www.mongodb.org/static/pgp/server-7.0.asc"
MONGODB_KEYRING = "/usr/share/keyrings/mongodb-server-7.0.gpg"
MONGODB_SOURCES = "/etc/apt/sources.list.d/mongodb-org-7.0.list"
MONGODB_REPO_LINE = (
    "deb [ arch=amd64,arm64 signed-by={keyring} ] "
    "https://repo.mongodb.org/apt/ubuntu {codename}/mongodb-org/7.0 multiverse"
)
MONGODB_DATA_DIR = "/var/lib/mongodb"
MONGODB_LOG_DIR = "/var/log/mongodb"
MONGODB_CONFIG_TEMPLATE = """storage:
  dbPath: /var/lib/mongodb
systemLog:
  destination: file
  logAppend: true
  path: /var/log/mongodb/mongod.log
net:
  port: {port}
  bindIp: 0.0.0.0
processManagement:
  timeZoneInfo: /usr/share/zoneinfo
security:
  authorization: {authorization}
"""
MONGODB_PING = "db.runCommand('ping').ok"
MONGODB_AUTH_SCRIPT = """try {{
  quit(db.getSiblingDB("admin").auth({user}, {password}).ok === 1 ? 0 : 1);
}} catch (error) {{
  quit(1);
}}
"""

RABBITMQ_UNIT = "rabbitmq-server"

MYSQL_USER_SQL = """CREATE DATABASE IF NOT EXISTS {database};
CREATE USER IF NOT EXISTS '{user}'@'%' IDENTIFIED BY '{password}';
CREATE USER IF NOT EXISTS '{user}'@'localhost' IDENTIFIED BY '{password}';
ALTER USER '{user}'@'%' IDENTIFIED BY '{password}';
ALTER USER '{user}'@'localhost' IDENTIFIED BY '{password}';
GRANT ALL PRIVILEGES ON *.* TO '{user}'@'%' WITH GRANT OPTION;
GRANT ALL PRIVILEGES ON *.* TO '{user}'@'localhost' WITH GRANT OPTION;
FLUSH PRIVILEGES;
"""

MONGODB_USER_SCRIPT = """const pwd = {password};
function upsert(dbName, roles) {{
  const target = db.getSiblingDB(dbName);
  if (target.getUser({user})) {{
    target.updateUser({user}, {{ pwd: pwd, roles: roles }});
  }} else {{
    target.createUser({{ user: {user}, pwd: pwd, roles: roles }});
  }}
}}
upsert("admin", [{{ role: "root", db: "admin" }}, {{ role: "readWriteAnyDatabase", db: "admin" }}]);
upsert({usage_db}, [{{ role: "readWrite", db: {usage_db} }}]);
"""


def _js_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def service_password(context: ServerContext, service: str) -> str:
    if context.credentials is None or service not in context.credentials.services:
        raise InstallerError(f"No credentials resolved for {service}.")
    return context.credentials.services[service].password


class DatabaseSteps:
    def __init__(self, runner, host, waiter, download, filesystem, logger, console):
        self.runner = runner
        self.host = host
        self.waiter = waiter
        self.download = download
        self.filesystem = filesystem
        self.logger = logger
        self.console = console

    def build(self) -> List[ProvisioningStep]:
        return [
            ProvisioningStep(
                name="install_mysql",
                description="Installing MySQL",
                idempotency_check=self.mysql_configured,
                apply=self.install_mysql,
                readiness_check=self.mysql_ready,
                timeout=SERVICE_READY_TIMEOUT,
                poll_interval=SERVICE_READY_POLL,
                critical=True,
                skip_group="db",
                remediation="Check `systemctl status mysql`, or re-run with `--skip-db` to use an existing server.",
            ),
            ProvisioningStep(
                name="install_mongodb",
                description="Installing MongoDB",
                idempotency_check=self.mongodb_configured,
                apply=self.install_mongodb,
                readiness_check=self.mongodb_configured,
                timeout=SERVICE_READY_TIMEOUT,
                poll_interval=SERVICE_READY_POLL,
                critical=True,
                skip_group="db",
                remediation="Check `journalctl -u mongod`, or re-run with `--skip-db` to use an existing server.",
            ),
            ProvisioningStep(
                name="install_rabbitmq",
                description="Installing RabbitMQ",
                idempotency_check=self.rabbitmq_configured,
                apply=self.install_rabbitmq,
                readiness_check=self.rabbitmq_ready,
                timeout=SERVICE_READY_TIMEOUT,
                poll_interval=SERVICE_READY_POLL,
                critical=True,
                skip_group="db",
                remediation="Check `rabbitmqctl status`, or re-run with `--skip-db` to use an existing broker.",
            ),
        ]

    # MySQL

    def mysql_configured(self, context: ServerContext) -> bool:
        if not self.host.is_active(*MYSQL_UNITS):
            return False
        return self.runner.succeeds(
            ["mysql", "-h127.0.0.1", f"-u{SERVICE_USERNAME}", "-e", "SELECT 1"],
            env={"MYSQL_PWD": service_password(context, "mysql")},
        )

    def mysql_ready(self, context: ServerContext) -> bool:
        return self.runner.succeeds(["mysqladmin", "ping", "-h", "localhost", "--silent"])

    def install_mysql(self, context: ServerContext):
        password = service_password(context, "mysql")
        if not self.host.is_active(*MYSQL_UNITS):
            self.host.apt_install(["mysql-server", "mysql-client"])
            self.host.start_and_enable("mysql")
            self._wait_for("MySQL", lambda: self.mysql_ready(context))
        else:
            self.logger.info("MySQL is already running; updating the %s user.", SERVICE_USERNAME)

        self.logger.info("Creating MySQL user: %s", SERVICE_USERNAME)
        sql = MYSQL_USER_SQL.format(database=MYSQL_DATABASE, user=SERVICE_USERNAME, password=password)
        self.runner.run(["mysql", "-u", "root"], capture_output=True, input_text=sql)

        self.logger.info("Configuring MySQL for remote access...")
        self.runner.run(
            ["sed", "-i", r"s/bind-address\s*=\s*127.0.0.1/bind-address = 0.0.0.0/", MYSQL_CONFIG],
            check=False,
            capture_output=True,
        )
        self.host.restart("mysql")

    # MongoDB

    def mongodb_configured(self, context: ServerContext) -> bool:
        if not self.host.is_active(MONGODB_UNIT):
            return False
        script = MONGODB_AUTH_SCRIPT.format(
            user=_js_string(SERVICE_USERNAME), password=_js_string(service_password(context, "mongodb"))
        )
        return self.runner.succeeds(["mongosh", "--quiet"], input_text=script)

    def install_mongodb(self, context: ServerContext):
        if not self.host.command_exists("mongod"):
            self.install_mongodb_packages()

        self.filesystem.ensure_dir(MONGODB_DATA_DIR, DIR_MODE)
        self.filesystem.ensure_dir(MONGODB_LOG_DIR, DIR_MODE)
        self.runner.run(
            ["chown", "-R", "mongodb:mongodb", MONGODB_DATA_DIR, MONGODB_LOG_DIR], check=False, capture_output=True
        )

        # Users can only be created or re-keyed while authorization is off.
        self.write_mongodb_config(authorization=False)
        if self.host.is_active(MONGODB_UNIT):
            self.host.restart(MONGODB_UNIT)
        else:
            self.host.start_and_enable(MONGODB_UNIT)
        self._wait_for(
            "MongoDB", lambda: self.runner.succeeds(["mongosh", "--quiet", "--eval", MONGODB_PING])
        )

        self.logger.info("Creating MongoDB user: %s", SERVICE_USERNAME)
        script = MONGODB_USER_SCRIPT.format(
            password=_js_string(service_password(context, "mongodb")),
            user=_js_string(SERVICE_USERNAME),
            usage_db=_js_string(MONGODB_DATABASE),
        )
        self.runner.run(["mongosh", "--quiet"], capture_output=True, input_text=script)

        self.logger.info("Enabling MongoDB authentication...")
        self.write_mongodb_config(authorization=True)
        self.host.restart(MONGODB_UNIT)

    def install_mongodb_packages(self):
        self.host.apt_install(["gnupg", "curl"])
        fd, key_path = tempfile.mkstemp(prefix="mongodb-key-", suffix=".asc")
        os.close(fd)
        try:
            self.download.download_file(MONGODB_KEY_URL, key_path, "Downloading MongoDB signing key...")
            self.runner.run(["gpg", "--dearmor", "--yes", "-o", MONGODB_KEYRING, key_path], capture_output=True)
        finally:
            self.filesystem.remove_file(key_path)

        repo_line = MONGODB_REPO_LINE.format(keyring=MONGODB_KEYRING, codename=self.ubuntu_codename())
        with open(MONGODB_SOURCES, "w", encoding="utf-8") as file_obj:
            file_obj.write(repo_line + "\n")
        self.filesystem.set_permissions(MONGODB_SOURCES, FILE_MODE)
        self.host.apt_install(["mongodb-org"])

    def ubuntu_codename(self) -> str:
        # MongoDB 7.0 publishes packages for jammy; newer releases reuse them.
        codename = self.runner.output(["lsb_release", "-cs"])
        return codename if codename in ("focal", "jammy") else "jammy"

    def write_mongodb_config(self, authorization: bool):
        content = MONGODB_CONFIG_TEMPLATE.format(
            port=MONGODB_PORT, authorization="enabled" if authorization else "disabled"
        )
        try:
            with open(MONGODB_CONFIG, "w", encoding="utf-8") as file_obj:
                file_obj.write(content)
        except OSError as exc:
            raise InstallerError(f"Could not write {MONGODB_CONFIG}: {exc}") from exc

    # RabbitMQ

    def rabbitmq_configured(self, context: ServerContext) -> bool:
        if not self.host.is_active(RABBITMQ_UNIT):
            return False
        return self.runner.succeeds(
            ["rabbitmqctl", "authenticate_user", SERVICE_USERNAME, service_password(context, "rabbitmq")]
        )

    def rabbitmq_ready(self, context: ServerContext) -> bool:
        return self.runner.succeeds(["rabbitmqctl", "status"])

    def install_rabbitmq(self, context: ServerContext):
        password = service_password(context, "rabbitmq")
        if not self.host.is_active(RABBITMQ_UNIT):
            for stale in glob.glob("/etc/apt/sources.list.d/rabbitmq*.list"):
                self.filesystem.remove_file(stale)
            self.host.apt_install(["rabbitmq-server"])
            self.host.start_and_enable(RABBITMQ_UNIT)
            self._wait_for("RabbitMQ", lambda: self.rabbitmq_ready(context))

        self.logger.info("Enabling RabbitMQ management plugin...")
        self.runner.run(["rabbitmq-plugins", "enable", "rabbitmq_management"], capture_output=True)

        self.logger.info("Creating RabbitMQ user: %s", SERVICE_USERNAME)
        added = self.runner.run(
            ["rabbitmqctl", "add_user", SERVICE_USERNAME, password], check=False, capture_output=True
        )
        if added.returncode != 0:
            self.runner.run(["rabbitmqctl", "change_password", SERVICE_USERNAME, password], capture_output=True)
        self.runner.run(["rabbitmqctl", "set_user_tags", SERVICE_USERNAME, "administrator"], capture_output=True)
        self.runner.run(
            ["rabbitmqctl", "set_permissions", "-p", RABBITMQ_VHOST, SERVICE_USERNAME, ".*", ".*", ".*"],
            capture_output=True,
        )
        self.runner.run(["rabbitmqctl", "delete_user", "guest"], check=False, capture_output=True)

    def _wait_for(self, label: str, predicate, timeout: Optional[float] = None):
        self.logger.info("Waiting for %s to be ready...", label)
        result = self.waiter.wait_until(
            predicate,
            timeout=timeout or SERVICE_READY_TIMEOUT,
            poll_interval=SERVICE_READY_POLL,
            description=label,
        )
        if not result.ready:
            raise InstallerError(f"{label} failed to start ({result.reason}).")
