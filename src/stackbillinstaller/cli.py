import logging
import os

import click
from rich.logging import RichHandler

from .constants import (
    DEFAULT_CHART_PATH,
    DEFAULT_CREDENTIALS_FILE,
    DEFAULT_MANIFEST_FILE,
    DEFAULT_NAMESPACE,
    DEFAULT_RELEASE_NAME,
    DEFAULT_RUN_TIMEOUT_MINUTES,
)
from .core import StackBillInstaller, console
from .errors import InstallerError
from .services.command_runner import CommandRunner
from .services.config_loader import ConfigLoader
from .services.credential_store import CredentialStore
from .services.filesystem import FileSystemService
from .services.host_packages import HostPackageService
from .services.kubernetes import KubernetesService
from .services.readiness import ReadinessWaiter
from .services.uninstall import UninstallService

DEFAULT_CONFIG_NAME = ".stackbill.yml"
CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _configure_logging(verbose: bool, log_file=None) -> logging.Logger:
    logger = logging.getLogger("stackbillinstaller")
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)
    return logger


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command(context_settings=CONTEXT_SETTINGS)
@click.option("--domain", required=False, help="Domain name for StackBill (e.g. portal.example.com)")
@click.option("--ssl-cert", required=False, type=click.Path(), help="Path to the SSL certificate (PEM)")
@click.option("--ssl-key", required=False, type=click.Path(), help="Path to the SSL private key (PEM)")
@click.option("--ssl-ca", required=False, type=click.Path(), help="Path to the SSL CA bundle (optional)")
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_NAME} if present.",
)
@click.option("-n", "--namespace", required=False, help=f"Kubernetes namespace (default: {DEFAULT_NAMESPACE})")
@click.option("--skip-infra", is_flag=True, default=None, help="Skip K3s/Istio installation (use an existing cluster)")
@click.option("--skip-db", is_flag=True, default=None, help="Skip host database installation (use existing servers)")
@click.option("--mysql-password", required=False, help="Use this MySQL password instead of a generated one")
@click.option("--mongodb-password", required=False, help="Use this MongoDB password instead of a generated one")
@click.option("--rabbitmq-password", required=False, help="Use this RabbitMQ password instead of a generated one")
@click.option("--server-ip", required=False, help="Address services are published on (default: first `hostname -I`)")
@click.option("--release", required=False, help=f"Helm release name (default: {DEFAULT_RELEASE_NAME})")
@click.option("--chart", required=False, type=click.Path(), help="Path to the StackBill Helm chart (default: .)")
@click.option(
    "--credentials-file",
    required=False,
    type=click.Path(),
    help=f"Where service credentials are persisted (default: {DEFAULT_CREDENTIALS_FILE}).",
)
@click.option(
    "--manifest-file",
    required=False,
    type=click.Path(),
    help=f"Path for the run manifest JSON (default: {DEFAULT_MANIFEST_FILE}).",
)
@click.option(
    "--registry-token-file",
    required=False,
    type=click.Path(),
    help="File holding the image registry token, used when STACKBILL_REGISTRY_TOKEN is unset.",
)
@click.option(
    "--auto-configure/--no-auto-configure",
    default=None,
    help="Try to configure the deployment controller through its API (default: on).",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Validate inputs, resolve credentials in memory and print the plan without changing anything.",
)
@click.option(
    "--run-timeout-minutes",
    required=False,
    type=int,
    default=None,
    help=f"Overall deadline for the run in minutes (default: {DEFAULT_RUN_TIMEOUT_MINUTES}).",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
def main(
    domain,
    ssl_cert,
    ssl_key,
    ssl_ca,
    config,
    namespace,
    skip_infra,
    skip_db,
    mysql_password,
    mongodb_password,
    rabbitmq_password,
    server_ip,
    release,
    chart,
    credentials_file,
    manifest_file,
    registry_token_file,
    auto_configure,
    dry_run,
    run_timeout_minutes,
    verbose,
    log_file,
):
    """Install StackBill on a single server: K3s, Istio, host databases, NFS and the Helm release."""
    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_NAME)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except InstallerError as exc:
        raise click.ClickException(str(exc)) from exc

    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    _configure_logging(verbose, log_file)

    try:
        installer = StackBillInstaller(
            domain=_resolve_option(domain, config_values, "domain"),
            ssl_cert=_resolve_option(ssl_cert, config_values, "ssl_cert"),
            ssl_key=_resolve_option(ssl_key, config_values, "ssl_key"),
            ssl_ca=_resolve_option(ssl_ca, config_values, "ssl_ca"),
            namespace=_resolve_option(namespace, config_values, "namespace", default=DEFAULT_NAMESPACE),
            skip_infra=bool(_resolve_option(skip_infra, config_values, "skip_infra", default=False)),
            skip_db=bool(_resolve_option(skip_db, config_values, "skip_db", default=False)),
            mysql_password=_resolve_option(mysql_password, config_values, "mysql_password"),
            mongodb_password=_resolve_option(mongodb_password, config_values, "mongodb_password"),
            rabbitmq_password=_resolve_option(rabbitmq_password, config_values, "rabbitmq_password"),
            server_ip=_resolve_option(server_ip, config_values, "server_ip"),
            release=_resolve_option(release, config_values, "release", default=DEFAULT_RELEASE_NAME),
            chart=_resolve_option(chart, config_values, "chart", default=DEFAULT_CHART_PATH),
            credentials_file=os.path.expanduser(
                _resolve_option(credentials_file, config_values, "credentials_file", default=DEFAULT_CREDENTIALS_FILE)
            ),
            manifest_file=os.path.expanduser(
                _resolve_option(manifest_file, config_values, "manifest_file", default=DEFAULT_MANIFEST_FILE)
            ),
            registry_token_file=_resolve_option(registry_token_file, config_values, "registry_token_file"),
            auto_configure=bool(_resolve_option(auto_configure, config_values, "auto_configure", default=True)),
            dry_run=bool(_resolve_option(dry_run, config_values, "dry_run", default=False)),
            run_timeout_minutes=int(
                _resolve_option(
                    run_timeout_minutes,
                    config_values,
                    "run_timeout_minutes",
                    default=DEFAULT_RUN_TIMEOUT_MINUTES,
                )
            ),
        )
    except InstallerError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(installer.run())


@click.command(context_settings=CONTEXT_SETTINGS)
@click.option("-n", "--namespace", default=DEFAULT_NAMESPACE, show_default=True, help="Kubernetes namespace")
@click.option("-r", "--release", default=DEFAULT_RELEASE_NAME, show_default=True, help="Helm release name")
@click.option("--delete-pvc", is_flag=True, help="Delete PersistentVolumeClaims")
@click.option("--delete-namespace", is_flag=True, help="Delete the namespace after uninstall")
@click.option("--delete-db", is_flag=True, help="Stop and remove host databases, NFS data and the credentials file")
@click.option(
    "--credentials-file",
    default=DEFAULT_CREDENTIALS_FILE,
    type=click.Path(),
    help="Credentials file purged by --delete-db.",
)
@click.option("--force", is_flag=True, help="Skip the confirmation prompt")
@click.option("--verbose", is_flag=True, help="Enable verbose logging")
def uninstall(namespace, release, delete_pvc, delete_namespace, delete_db, credentials_file, force, verbose):
    """Remove a StackBill installation and, optionally, its data."""
    logger = _configure_logging(verbose)

    if not force:
        console.print(f"[yellow]WARNING: This will uninstall StackBill from namespace '{namespace}'[/yellow]")
        if delete_pvc:
            console.print("[red]WARNING: --delete-pvc is set. PVC DATA WILL BE DELETED![/red]")
        if delete_namespace:
            console.print(f"[yellow]WARNING: The namespace '{namespace}' will be deleted[/yellow]")
        if delete_db:
            console.print("[red]WARNING: --delete-db is set. HOST DATABASES WILL BE REMOVED![/red]")
        if not click.confirm("Are you sure you want to continue?", default=False):
            console.print("Uninstall cancelled.")
            return

    runner = CommandRunner(logger=logger)
    filesystem = FileSystemService(logger=logger, console=console)
    service = UninstallService(
        runner,
        KubernetesService(runner, logger=logger),
        HostPackageService(runner, ReadinessWaiter(logger=logger), logger=logger, console=console),
        filesystem,
        CredentialStore(os.path.expanduser(credentials_file), logger=logger),
        logger=logger,
        console=console,
    )
    try:
        removed = service.run(
            namespace=namespace,
            release=release,
            delete_pvc=delete_pvc,
            delete_namespace=delete_namespace,
            delete_db=delete_db,
        )
    except InstallerError as exc:
        raise click.ClickException(str(exc)) from exc

    console.print(f"[green]StackBill uninstalled.[/green] Removed: {', '.join(removed) or 'nothing'}")


if __name__ == "__main__":
    main()
