import logging
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional

import requests
from rich.console import Console
from rich.table import Table

from .constants import (
    DEFAULT_CHART_PATH,
    DEFAULT_CREDENTIALS_FILE,
    DEFAULT_MANIFEST_FILE,
    DEFAULT_NAMESPACE,
    DEFAULT_RELEASE_NAME,
    DEFAULT_RUN_TIMEOUT_MINUTES,
    SERVICE_NAMES,
)
from .errors import FatalStepError, InstallerError
from .models import HandshakeOutcome, ProvisioningStep, ServerContext, StepResult, StepStatus
from .services.command_runner import CommandRunner
from .services.credential_store import CredentialStore
from .services.databases import DatabaseSteps
from .services.deployment import DeploymentPrepSteps, DeploymentTrigger
from .services.download import DownloadService
from .services.filesystem import FileSystemService
from .services.handshake import ControllerHandshake
from .services.host_packages import HostPackageService
from .services.infrastructure import InfrastructureSteps
from .services.kubernetes import KubernetesService
from .services.manifest import RunManifestService
from .services.preflight import PreflightService
from .services.readiness import ReadinessWaiter, RunDeadline
from .services.reporter import CredentialReporter
from .services.sequencer import ProvisioningSequencer
from .services.storage import StorageSteps
from .services.validation import ValidationService

console = Console()
logger = logging.getLogger("stackbillinstaller")

DEPLOY_STEP = "deploy_stackbill"


class StackBillInstaller:
    def __init__(
        self,
        domain: Optional[str] = None,
        ssl_cert: Optional[str] = None,
        ssl_key: Optional[str] = None,
        ssl_ca: Optional[str] = None,
        namespace: str = DEFAULT_NAMESPACE,
        skip_infra: bool = False,
        skip_db: bool = False,
        mysql_password: Optional[str] = None,
        mongodb_password: Optional[str] = None,
        rabbitmq_password: Optional[str] = None,
        server_ip: Optional[str] = None,
        release: str = DEFAULT_RELEASE_NAME,
        chart: str = DEFAULT_CHART_PATH,
        credentials_file: str = DEFAULT_CREDENTIALS_FILE,
        manifest_file: str = DEFAULT_MANIFEST_FILE,
        registry_token_file: Optional[str] = None,
        auto_configure: bool = True,
        dry_run: bool = False,
        run_timeout_minutes: Optional[int] = DEFAULT_RUN_TIMEOUT_MINUTES,
    ):
        self.domain = domain
        self.ssl_cert = ssl_cert
        self.ssl_key = ssl_key
        self.ssl_ca = ssl_ca
        self.namespace = namespace
        self.skip_infra = skip_infra
        self.skip_db = skip_db
        self.password_overrides = {
            "mysql": mysql_password,
            "mongodb": mongodb_password,
            "rabbitmq": rabbitmq_password,
        }
        self.server_ip = server_ip
        self.release = release
        self.chart = chart
        self.credentials_file = credentials_file
        self.manifest_file = manifest_file
        self.registry_token_file = registry_token_file
        self.auto_configure = auto_configure
        self.dry_run = dry_run
        self.run_timeout_minutes = run_timeout_minutes

        self.run_id = uuid.uuid4().hex[:10]
        self.context: Optional[ServerContext] = None
        self.deadline: Optional[RunDeadline] = None

        self.command_runner = CommandRunner(logger=logger)
        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.validation_service = ValidationService()
        self.credential_store = CredentialStore(credentials_file, logger=logger)
        self.manifest_service = RunManifestService(manifest_file, logger=logger)
        self.waiter = ReadinessWaiter(logger=logger)
        self.download_service = DownloadService(logger=logger, console=console, requests_module=requests)
        self.host_service = HostPackageService(self.command_runner, self.waiter, logger=logger, console=console)
        self.kube_service = KubernetesService(self.command_runner, logger=logger)
        self.preflight_service = PreflightService(self.command_runner, logger=logger, console=console)
        self.handshake_service = ControllerHandshake(logger=logger, console=console, requests_module=requests)
        self.deployment_trigger = DeploymentTrigger(
            self.kube_service, self.filesystem_service, self.handshake_service, logger=logger, console=console
        )
        self.reporter = CredentialReporter(self.credential_store, self.manifest_service, logger=logger, console=console)

    def validate(self) -> ServerContext:
        return self.validation_service.validate(
            domain=self.domain,
            ssl_cert=self.ssl_cert,
            ssl_key=self.ssl_key,
            ssl_ca=self.ssl_ca,
            namespace=self.namespace,
            skip_infra=self.skip_infra,
            skip_db=self.skip_db,
            password_overrides=self.password_overrides,
            registry_token_file=self.registry_token_file,
            server_ip=self.server_ip,
            release_name=self.release,
            chart_path=self.chart,
        )

    def detect_server_ip(self) -> str:
        addresses = self.command_runner.output(["hostname", "-I"]).split()
        if not addresses:
            raise InstallerError("Could not detect the server IP address. Pass it explicitly with --server-ip.")
        logger.info("Detected server IP: %s", addresses[0])
        return addresses[0]

    def resolve_credentials(self, context: ServerContext) -> ServerContext:
        resolved, _overridden = self.credential_store.resolve(SERVICE_NAMES, context.password_overrides)
        record = self.credential_store.build_record(context, resolved)
        context = replace(context, credentials=record)
        self.command_runner.register_secrets(context.secret_values())
        return context

    def build_steps(self, context: ServerContext) -> List[ProvisioningStep]:
        """Infrastructure, databases, storage and deployment, in dependency order."""
        infra = InfrastructureSteps(
            self.command_runner,
            self.kube_service,
            self.host_service,
            self.download_service,
            self.filesystem_service,
            logger=logger,
            console=console,
        )
        databases = DatabaseSteps(
            self.command_runner,
            self.host_service,
            self.waiter,
            self.download_service,
            self.filesystem_service,
            logger=logger,
            console=console,
        )
        storage = StorageSteps(self.command_runner, self.host_service, self.filesystem_service, logger=logger)
        prep = DeploymentPrepSteps(self.kube_service, logger=logger, console=console)
        steps = infra.build() + databases.build() + storage.build() + prep.build()
        steps.extend(self.deployment_trigger.build_steps())
        return steps

    def print_plan(self, context: ServerContext, steps: List[ProvisioningStep]):
        skipped = set(context.skipped_groups)
        table = Table(title="Installation plan (dry run)", border_style="cyan")
        table.add_column("#", justify="right")
        table.add_column("Step")
        table.add_column("Action")
        table.add_column("Critical")
        for index, step in enumerate(steps, start=1):
            action = f"skip (--skip-{step.skip_group})" if step.skip_group in skipped else "run"
            table.add_row(str(index), step.description or step.name, action, "yes" if step.critical else "no")
        console.print(table)

        origin = "reused from" if self.credential_store.reused else "would be written to"
        console.print(f"Domain: [cyan]{context.domain}[/cyan]  Namespace: [cyan]{context.namespace}[/cyan]")
        console.print(f"Server IP: {context.server_ip}")
        console.print(f"Credentials {origin} {self.credential_store.path}")
        console.print("[green]Dry run complete. No changes were made.[/green]")

    def configure_controller(self, context: ServerContext, results: List[StepResult]) -> Optional[HandshakeOutcome]:
        if not self.auto_configure:
            return None
        deploy = next((result for result in results if result.name == DEPLOY_STEP), None)
        if deploy is None or deploy.status not in (StepStatus.APPLIED, StepStatus.ALREADY_SATISFIED):
            logger.info("Skipping controller auto-configuration: the deployment is not ready.")
            return HandshakeOutcome(configured=False, exhausted=True, message="Deployment controller is not ready.")
        return self.deployment_trigger.configure_controller(context, context.credentials.secrets())

    def _manifest_context(self, context: ServerContext) -> Dict[str, Any]:
        return {
            "domain": context.domain,
            "namespace": context.namespace,
            "release": context.release_name,
            "chart": context.chart_path,
            "skip_infra": context.skip_infra,
            "skip_db": context.skip_db,
            "credentials_file": self.credential_store.path,
        }

    def run(self) -> int:
        exit_code = 1
        manifest_status = "failed"
        manifest_error: Optional[str] = None

        try:
            logger.info("Starting StackBill installer...")
            context = self.validate()

            self.preflight_service.check_tools(context)
            self.preflight_service.check_system_requirements()

            if not context.server_ip:
                context = replace(context, server_ip=self.detect_server_ip())

            if self.dry_run:
                context = self.resolve_credentials(context)
                self.context = context
                self.print_plan(context, self.build_steps(context))
                exit_code = 0
                return exit_code

            self.manifest_service.start_run(self.run_id, self._manifest_context(context))
            self.manifest_service.set_state("resolving_credentials")
            context = self.resolve_credentials(context)
            self.context = context

            self.manifest_service.set_state("running_steps")
            self.deadline = RunDeadline(self.run_timeout_minutes * 60 if self.run_timeout_minutes else None)
            self.waiter.deadline = self.deadline
            sequencer = ProvisioningSequencer(
                self.waiter,
                logger=logger,
                console=console,
                on_step_started=self.manifest_service.step_started,
                on_step_finished=self.manifest_service.step_finished,
                mask=self.command_runner.mask,
            )
            results = sequencer.run(self.build_steps(context), context)

            fatal = next((result for result in results if result.status == StepStatus.FATAL_ERROR), None)
            if fatal is not None:
                self.manifest_service.set_state("aborted")
                raise FatalStepError(fatal.name, fatal.message)

            self.manifest_service.set_state("reporting")
            handshake = self.configure_controller(context, results)
            self.reporter.report(context.credentials, context, results, handshake)
            self.manifest_service.set_state("done")

            manifest_status = "success"
            exit_code = 0
            return exit_code

        except KeyboardInterrupt:
            if self.deadline is not None:
                self.deadline.cancel()
            console.print("[bold red]Installation cancelled by user.[/bold red]")
            logger.info("Installation cancelled by user")
            manifest_status = "aborted"
            manifest_error = "Installation cancelled by user."
            return exit_code
        except FatalStepError as exc:
            console.print(f"[bold red]Installation aborted at step '{exc.step_name}':[/bold red] {exc}")
            manifest_status = "aborted"
            manifest_error = str(exc)
            return exit_code
        except InstallerError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            manifest_error = str(exc)
            return exit_code
        except Exception as exc:
            manifest_error = self.command_runner.mask(str(exc))
            console.print(f"[bold red]Unexpected error:[/bold red] {manifest_error}")
            logger.error("Unexpected error: %s", manifest_error)
            logger.debug("Unexpected error traceback", exc_info=True)
            return exit_code
        finally:
            if self.manifest_service.started:
                self.manifest_service.finalize(manifest_status, error=manifest_error)
