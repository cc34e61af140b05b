"""End-of-run summary and credential persistence."""

from typing import List, Optional

from rich.panel import Panel
from rich.table import Table

from stackbillinstaller.constants import (
    INGRESS_HTTP_NODE_PORT,
    INGRESS_HTTPS_NODE_PORT,
    NFS_EXPORT_PATH,
    RABBITMQ_MANAGEMENT_PORT,
)
from stackbillinstaller.models import CredentialRecord, HandshakeOutcome, ServerContext, StepResult, StepStatus

STATUS_STYLES = {
    StepStatus.SKIPPED: "dim",
    StepStatus.ALREADY_SATISFIED: "green",
    StepStatus.APPLIED: "green",
    StepStatus.DEGRADED_WARNING: "yellow",
    StepStatus.FATAL_ERROR: "red",
}

SERVICE_LABELS = {"mysql": "MySQL", "mongodb": "MongoDB", "rabbitmq": "RabbitMQ"}


class CredentialReporter:
    """Persists the credential record and prints the run summary. Passwords only ever go to the record file."""

    def __init__(self, store, manifest, logger, console):
        self.store = store
        self.manifest = manifest
        self.logger = logger
        self.console = console

    def report(
        self,
        record: CredentialRecord,
        context: ServerContext,
        results: List[StepResult],
        handshake: Optional[HandshakeOutcome] = None,
    ):
        self.store.persist(record)
        if self.manifest is not None:
            self.manifest.add_artifact("credentials_file", self.store.path)

        self.console.print(self.steps_table(results))
        self.console.print(self.services_table(record))
        self.print_access(context)

        degraded = [result for result in results if result.status == StepStatus.DEGRADED_WARNING]
        for result in degraded:
            self.console.print(f"[yellow]{result.name}: {result.message}[/yellow]")

        if handshake is not None and handshake.configured:
            self.console.print(f"[green]Deployment controller configured via {handshake.endpoint}.[/green]")
        else:
            self.print_manual_configuration(record, context, handshake)

        self.print_next_steps(context)
        self.console.print(
            Panel.fit(
                f"[bold green]StackBill installation finished.[/bold green]\n"
                f"Passwords are saved in [cyan]{self.store.path}[/cyan] (mode 600).",
                border_style="green",
            )
        )

    def steps_table(self, results: List[StepResult]) -> Table:
        table = Table(title="Provisioning steps", border_style="cyan")
        table.add_column("Step")
        table.add_column("Outcome")
        table.add_column("Duration", justify="right")
        for result in results:
            style = STATUS_STYLES.get(result.status, "white")
            table.add_row(
                result.name,
                f"[{style}]{result.status.value}[/{style}]",
                f"{result.duration_seconds:.1f}s",
            )
        return table

    def services_table(self, record: CredentialRecord) -> Table:
        table = Table(title="Service endpoints", border_style="cyan")
        table.add_column("Service")
        table.add_column("Endpoint")
        table.add_column("Database")
        table.add_column("Username")
        for name, credential in record.services.items():
            table.add_row(
                SERVICE_LABELS.get(name, name),
                f"{credential.host}:{credential.port}",
                credential.database or "-",
                credential.username,
            )
        table.add_row("NFS", record.nfs.server, record.nfs.path, "-")
        return table

    def print_access(self, context: ServerContext):
        self.console.print("\n[bold]Access[/bold]")
        self.console.print(f"  Portal:          [cyan]https://{context.domain}[/cyan]")
        self.console.print(f"  Ingress (HTTP):  http://{context.server_ip}:{INGRESS_HTTP_NODE_PORT}")
        self.console.print(f"  Ingress (HTTPS): https://{context.server_ip}:{INGRESS_HTTPS_NODE_PORT}")
        if not context.skip_db:
            self.console.print(f"  RabbitMQ UI:     http://{context.server_ip}:{RABBITMQ_MANAGEMENT_PORT}")

    def print_manual_configuration(
        self, record: CredentialRecord, context: ServerContext, handshake: Optional[HandshakeOutcome]
    ):
        if handshake is not None and handshake.message:
            self.logger.warning("Controller auto-configuration incomplete: %s", handshake.message)
        lines = [
            "[bold yellow]Manual configuration required[/bold yellow]",
            "",
            f"Open the controller UI at http://{context.server_ip}:{INGRESS_HTTP_NODE_PORT}",
            f"or run: kubectl port-forward svc/sb-deployment-controller 8080:80 -n {context.namespace}",
            "",
            "Enter these values in the setup wizard:",
            f"  Domain:     {record.domain}",
        ]
        for name, credential in record.services.items():
            label = SERVICE_LABELS.get(name, name)
            lines.append(f"  {label + ':':<11} {credential.host}:{credential.port} | user {credential.username}")
        lines.append(f"  {'NFS:':<11} {record.nfs.server} | path {NFS_EXPORT_PATH}")
        lines.append("")
        lines.append(f"Passwords are in {self.store.path}")
        self.console.print(Panel("\n".join(lines), border_style="yellow"))

    def print_next_steps(self, context: ServerContext):
        self.console.print("\n[bold]Next steps[/bold]")
        self.console.print(f"  kubectl get pods -n {context.namespace}")
        self.console.print("  kubectl get pods -n sb-apps")
        self.console.print(f"  helm status {context.release_name} -n {context.namespace}")
        self.console.print(f"  cat {self.store.path}")
