"""Best-effort configuration handshake with the deployment controller.

The controller's setup API is not published, so the installer tries an
ordered chain of strategies (payload format x candidate path) and stops at
the first 2xx response. Running out of strategies is a normal outcome: the
reporter then prints manual configuration instructions.
"""

import base64
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from stackbillinstaller.constants import (
    MONGODB_DATABASE,
    MONGODB_PORT,
    MYSQL_DATABASE,
    MYSQL_PORT,
    NFS_EXPORT_PATH,
    RABBITMQ_PORT,
    SERVICE_USERNAME,
)
from stackbillinstaller.models import HandshakeOutcome, ServerContext

CANDIDATE_PATHS = (
    "/api/configuration",
    "/api/setup",
    "/api/config",
    "/api/deploy",
    "/api/install",
    "/api/v1/configuration",
    "/api/v1/setup",
    "/api/v1/config",
    "/api/v1/deploy",
    "/configuration",
    "/setup",
    "/deploy",
    "/config",
)

PayloadBuilder = Callable[[ServerContext, Dict[str, str]], Dict[str, Any]]


@dataclass(frozen=True)
class ConfigurationStrategy:
    name: str
    path: str
    payload_builder: PayloadBuilder
    encoding: str = "json"


def _file_b64(path: Optional[str]) -> str:
    if not path:
        return ""
    with open(path, "rb") as file_obj:
        return base64.b64encode(file_obj.read()).decode("ascii")


def structured_payload(context: ServerContext, secrets: Dict[str, str]) -> Dict[str, Any]:
    host = context.server_ip
    return {
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
        "domain": context.domain,
        "ssl": {
            "certificate": _file_b64(context.ssl_cert_path),
            "privateKey": _file_b64(context.ssl_key_path),
        },
    }


def flat_payload(context: ServerContext, secrets: Dict[str, str]) -> Dict[str, Any]:
    host = context.server_ip
    return {
        "mysqlHost": host,
        "mysqlPort": str(MYSQL_PORT),
        "mysqlDatabase": MYSQL_DATABASE,
        "mysqlUsername": SERVICE_USERNAME,
        "mysqlPassword": secrets.get("mysql", ""),
        "mongodbHost": host,
        "mongodbPort": str(MONGODB_PORT),
        "mongodbDatabase": MONGODB_DATABASE,
        "mongodbUsername": SERVICE_USERNAME,
        "mongodbPassword": secrets.get("mongodb", ""),
        "rabbitmqHost": host,
        "rabbitmqPort": str(RABBITMQ_PORT),
        "rabbitmqUsername": SERVICE_USERNAME,
        "rabbitmqPassword": secrets.get("rabbitmq", ""),
        "nfsServer": host,
        "nfsPath": NFS_EXPORT_PATH,
        "domain": context.domain,
    }


def default_strategies(paths=CANDIDATE_PATHS) -> List[ConfigurationStrategy]:
    strategies = [ConfigurationStrategy(f"json {path}", path, structured_payload) for path in paths]
    strategies += [ConfigurationStrategy(f"form {path}", path, flat_payload, "form") for path in paths]
    return strategies


class ControllerHandshake:
    def __init__(self, logger, console, requests_module, timeout: float = 10.0):
        self.logger = logger
        self.console = console
        self.requests = requests_module
        self.timeout = timeout

    def attempt(
        self,
        base_url: str,
        context: ServerContext,
        secrets: Dict[str, str],
        strategies: Optional[List[ConfigurationStrategy]] = None,
    ) -> HandshakeOutcome:
        strategies = default_strategies() if strategies is None else strategies
        attempts = 0
        payloads: Dict[PayloadBuilder, Dict[str, Any]] = {}

        for strategy in strategies:
            attempts += 1
            if strategy.payload_builder not in payloads:
                payloads[strategy.payload_builder] = strategy.payload_builder(context, secrets)
            url = base_url.rstrip("/") + strategy.path
            self.logger.debug("Trying controller strategy '%s'", strategy.name)
            try:
                body = {"json" if strategy.encoding == "json" else "data": payloads[strategy.payload_builder]}
                response = self.requests.post(url, timeout=self.timeout, **body)
            except self.requests.RequestException as exc:
                self.logger.debug("%s -> %s", strategy.path, exc.__class__.__name__)
                continue

            status = response.status_code
            if 200 <= status < 300:
                self.console.print(f"[green]Controller configured via {strategy.path} (HTTP {status}).[/green]")
                return HandshakeOutcome(
                    configured=True,
                    strategy=strategy.name,
                    endpoint=strategy.path,
                    attempts=attempts,
                    message=f"HTTP {status}",
                )
            if status not in (404, 405):
                self.logger.info("  %s -> HTTP %s", strategy.path, status)

        self.logger.warning("Controller auto-configuration was not accepted by any known endpoint.")
        return HandshakeOutcome(
            configured=False,
            attempts=attempts,
            exhausted=True,
            message=f"No endpoint accepted the configuration after {attempts} attempt(s).",
        )
