"""Main CLI entry point."""

import functools
import getpass
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import click
from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from labkeeper.config import Settings, load_settings
from labkeeper.config.models import check_cidr
from labkeeper.orchestrator import CleanupOrchestrator, CleanupPlan, CleanupStatus, ResourceOutcome
from labkeeper.provisioners import (
    BucketHandler,
    InstanceHandler,
    KeyPairHandler,
    PlannedAction,
    SecurityGroupHandler,
    generate_bucket_name,
    sample_file_body,
)
from labkeeper.state import DELETION_ORDER, ConsistencyMode, ResourceKind, S3StateStore, StateLedger
from labkeeper.utils.aws_client import AWSClientManager
from labkeeper.utils.errors import (
    ConfigurationError,
    CredentialPersistFailure,
    ErrorHandler,
    ErrorPolicy,
    LabkeeperError,
)
from labkeeper.utils.logging import get_logger, setup_logging
from labkeeper.utils.retry import BackoffMode

console = Console()
logger = get_logger(__name__)

SSH_PORT = 22
HTTP_PORT = 80


@dataclass
class Runtime:
    """Settings plus the AWS clients, ledger and handlers built from them."""

    settings: Settings
    clients: AWSClientManager
    ledger: StateLedger
    store: S3StateStore
    _handlers: Dict[str, Any] = field(default_factory=dict)

    @property
    def security_groups(self) -> SecurityGroupHandler:
        return self._handler('sg', lambda: SecurityGroupHandler(self.ledger, self.clients, self.settings.tags))

    @property
    def key_pairs(self) -> KeyPairHandler:
        return self._handler('key', lambda: KeyPairHandler(
            self.ledger, self.clients, self.settings.instance.key_dir, self.settings.tags
        ))

    @property
    def instances(self) -> InstanceHandler:
        return self._handler('ec2', lambda: InstanceHandler(self.ledger, self.clients, self.settings.tags))

    @property
    def buckets(self) -> BucketHandler:
        return self._handler('s3', lambda: BucketHandler(
            self.ledger, self.clients, self.settings.region, self.settings.tags
        ))

    def orchestrator(self) -> CleanupOrchestrator:
        instance = self.settings.instance
        cleanup = self.settings.cleanup
        return CleanupOrchestrator(
            self.ledger,
            instances=self.instances,
            key_pairs=self.key_pairs,
            security_groups=self.security_groups,
            buckets=self.buckets,
            instance_timeout=instance.wait_timeout,
            poll_interval=instance.poll_interval,
            sg_max_attempts=cleanup.sg_max_attempts,
            sg_retry_delay=cleanup.sg_retry_delay,
            sg_backoff=BackoffMode(cleanup.sg_backoff),
        )

    def _handler(self, key: str, factory):
        if key not in self._handlers:
            self._handlers[key] = factory()
        return self._handlers[key]


def build_runtime(settings: Settings) -> Runtime:
    """Wire AWS clients, the remote store and the ledger from settings."""
    clients = AWSClientManager(profile=settings.profile, region=settings.region)
    store = S3StateStore(
        clients.get_client('s3'),
        bucket_name=settings.state.bucket,
        key=settings.state.key,
        region=settings.region,
    )
    ledger = StateLedger(
        store,
        project=settings.project,
        region=settings.region,
        cache_path=settings.state.cache_path,
        consistency=ConsistencyMode(settings.state.consistency),
    )
    return Runtime(settings=settings, clients=clients, ledger=ledger, store=store)


def get_runtime(ctx: click.Context) -> Runtime:
    if 'runtime' not in ctx.obj:
        ctx.obj['runtime'] = build_runtime(ctx.obj['settings'])
    return ctx.obj['runtime']


def handle_errors(func):
    """Report failures with context and exit 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LabkeeperError as e:
            logger.debug(f"Command failed: {e.to_dict()}")
            console.print(f"[red]{e.to_user_message()}[/red]")
            sys.exit(1)
        except (ClientError, BotoCoreError) as e:
            error = ErrorHandler().handle_exception(e)
            console.print(f"[red]{error.to_user_message()}[/red]")
            sys.exit(1)
        except (click.exceptions.Exit, click.ClickException, click.Abort):
            raise
        except Exception as e:
            logger.exception("Unexpected error")
            console.print(f"[red]Unexpected error:[/red] {e}")
            sys.exit(1)

    return wrapper


def validate_cidr(ctx, param, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        return check_cidr(value.strip())
    except ValueError as e:
        raise click.BadParameter(str(e))


@click.group()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='Configuration file (default: ./labkeeper.yaml if present)')
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', type=click.Choice(['debug', 'info', 'warning', 'error']), help='Console log level')
@click.pass_context
def cli(ctx, config_path, profile, region, log_level):
    """Provision lab resources on AWS and track them for reliable cleanup."""
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config_path, overrides={
            'profile': profile,
            'region': region,
            'logging.level': log_level,
        })
    except ConfigurationError as e:
        console.print("[red]Configuration error:[/red]")
        console.print(str(e))
        sys.exit(1)

    ctx.obj['settings'] = settings
    setup_logging(settings.logging.level, settings.logging.dir)


@cli.command()
@click.pass_context
@handle_errors
def init(ctx):
    """Create the state bucket if needed and initialize the ledger."""
    rt = get_runtime(ctx)
    rt.clients.validate_credentials()

    if rt.store.ensure_bucket():
        console.print(f"[green]✓[/green] Created state bucket {rt.settings.state.bucket}")

    rt.ledger.pull()
    already = rt.ledger.remote_exists
    rt.ledger.ensure_initialized()
    verb = "already initialized" if already else "initialized"
    console.print(f"[green]✓[/green] Remote state {verb}: {rt.store.describe()}")


@cli.command('create-security-group')
@click.option('--name', help='Security group name')
@click.option('--ssh-cidr', callback=validate_cidr, help='CIDR allowed on port 22 (e.g., 203.0.113.10/32)')
@click.option('--http-cidr', callback=validate_cidr, help='CIDR allowed on port 80')
@click.option('--dry-run', is_flag=True, help='Show planned actions without making changes')
@click.pass_context
@handle_errors
def create_security_group(ctx, name, ssh_cidr, http_cidr, dry_run):
    """Create a security group with SSH and HTTP ingress rules."""
    rt = get_runtime(ctx)
    name = name or rt.settings.network.security_group

    if dry_run:
        ssh = ssh_cidr or rt.settings.network.ssh_cidr or '<prompted>'
        http = http_cidr or rt.settings.network.http_cidr or '<prompted>'
        print_plan(rt.security_groups.plan_create(name, [(SSH_PORT, ssh), (HTTP_PORT, http)]))
        return

    rt.ledger.ensure_initialized()
    group_id = ensure_security_group(rt, name, ssh_cidr, http_cidr)
    console.print(f"[green]✓[/green] Security group {name}: {group_id}")


@cli.command('create-keypair')
@click.option('--name', help='Key pair name (default: <key_prefix><epoch>)')
@click.option('--dry-run', is_flag=True, help='Show planned actions without making changes')
@click.pass_context
@handle_errors
def create_keypair(ctx, name, dry_run):
    """Create a key pair and save its private key locally."""
    rt = get_runtime(ctx)
    name = name or default_key_name(rt.settings)

    if dry_run:
        print_plan(rt.key_pairs.plan_create(name))
        return

    rt.ledger.ensure_initialized()
    create_key_pair(rt, name)


@cli.command('create-instance')
@click.option('--name', help='Instance Name tag')
@click.option('--image', help='AMI id (default: latest Amazon Linux 2)')
@click.option('--instance-type', help='Instance type')
@click.option('--sg-name', help='Security group to create or reuse')
@click.option('--key-name', help='Key pair name to create')
@click.option('--ssh-cidr', callback=validate_cidr, help='CIDR allowed on port 22 when the security group is created')
@click.option('--http-cidr', callback=validate_cidr, help='CIDR allowed on port 80 when the security group is created')
@click.option('--wait/--no-wait', default=True, help='Wait for the instance to be running')
@click.option('--dry-run', is_flag=True, help='Show planned actions without making changes')
@click.pass_context
@handle_errors
def create_instance(ctx, name, image, instance_type, sg_name, key_name, ssh_cidr, http_cidr, wait, dry_run):
    """Launch an EC2 instance with its security group and key pair."""
    rt = get_runtime(ctx)
    cfg = rt.settings.instance
    name = name or cfg.name
    image = image or cfg.image
    instance_type = instance_type or cfg.type
    sg_name = sg_name or rt.settings.network.security_group
    key_name = key_name or default_key_name(rt.settings)

    if dry_run:
        actions = rt.security_groups.plan_create(sg_name)
        actions += rt.key_pairs.plan_create(key_name)
        actions += rt.instances.plan_create(
            name, image or '<latest Amazon Linux 2>', instance_type, f"<{sg_name}>", key_name
        )
        print_plan(actions)
        return

    rt.ledger.ensure_initialized()

    if not image:
        image = rt.instances.resolve_latest_image()
        console.print(f"[green]✓[/green] AMI resolved: {image}")

    group_id = ensure_security_group(rt, sg_name, ssh_cidr, http_cidr)
    create_key_pair(rt, key_name)

    instance_id = rt.instances.create(name, image, instance_type, group_id, key_name)
    console.print(f"[green]✓[/green] Instance launched: {instance_id}")

    if not wait:
        return

    console.print("Waiting for instance to be running...")
    rt.instances.wait_running(instance_id, cfg.wait_timeout, cfg.poll_interval)
    public_ip, private_ip = rt.instances.get_addresses(instance_id)

    key_path = rt.key_pairs.key_path(key_name)
    console.print(Panel.fit(
        f"Instance ID: {instance_id}\n"
        f"Public IP: {public_ip or 'N/A'}\n"
        f"Private IP: {private_ip or 'N/A'}\n"
        f"Key Pair: {key_path}\n\n"
        f"SSH: ssh -i {key_path} ec2-user@{public_ip or private_ip}",
        title="EC2 Created & Tracked in State",
        border_style="green"
    ))


@cli.command('create-bucket')
@click.option('--name', help='Bucket name (default: <prefix><epoch>-<user>)')
@click.option('--sample-file/--no-sample-file', default=True, help='Upload a welcome file')
@click.option('--dry-run', is_flag=True, help='Show planned actions without making changes')
@click.pass_context
@handle_errors
def create_bucket(ctx, name, sample_file, dry_run):
    """Create a versioned S3 bucket and track it."""
    rt = get_runtime(ctx)
    cfg = rt.settings.bucket
    user = getpass.getuser()
    name = name or generate_bucket_name(cfg.prefix, user)
    sample_key = cfg.sample_key if sample_file else None

    if dry_run:
        print_plan(rt.buckets.plan_create(name, sample_key))
        return

    rt.ledger.ensure_initialized()
    rt.buckets.create_bucket(name, versioning=cfg.versioning, tags=cfg.tags)
    rt.buckets.track(name)
    console.print(f"[green]✓[/green] Bucket created: {name}")

    if sample_key:
        rt.buckets.upload_text(name, sample_key, sample_file_body(name, rt.settings.region, user))
        console.print(f"[green]✓[/green] File uploaded: s3://{name}/{sample_key}")
        console.print(f"\nTo download the file:\n  aws s3 cp s3://{name}/{sample_key} .")


@cli.command('list')
@click.option('--kind', help='Only this kind (ec2, security_group, keypair, s3 or instance, firewall, ...)')
@click.pass_context
@handle_errors
def list_resources(ctx, kind):
    """List tracked resources."""
    rt = get_runtime(ctx)
    try:
        kinds = [ResourceKind.parse(kind)] if kind else list(DELETION_ORDER)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--kind')

    document = rt.ledger.pull()

    table = Table(title=f"Tracked resources: {document.project} ({document.region})")
    table.add_column("Kind", style="cyan")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Created", style="dim")

    count = 0
    for resource_kind in kinds:
        for resource_id, record in sorted(document.records(resource_kind).items()):
            table.add_row(resource_kind.value, resource_id, record.display_name, record.created_at or "")
            count += 1

    if count == 0:
        console.print("[yellow]No tracked resources[/yellow]")
        return
    console.print(table)


@cli.command('show-state')
@click.pass_context
@handle_errors
def show_state(ctx):
    """Print the ledger document."""
    rt = get_runtime(ctx)
    rt.ledger.pull()
    console.print_json(StateLedger.serialize(rt.ledger.document).decode('utf-8'))


@cli.command()
@click.option('--dry-run', is_flag=True, help='Show what would be deleted without deleting')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
@handle_errors
def cleanup(ctx, dry_run, yes):
    """Delete every tracked resource."""
    rt = get_runtime(ctx)
    orchestrator = rt.orchestrator()

    plan = orchestrator.plan()
    if plan.is_empty():
        console.print("[green]Nothing to clean up[/green]")
        return

    print_cleanup_plan(plan)

    if dry_run:
        console.print("[yellow]DRY-RUN: no resources were deleted[/yellow]")
        return

    if not yes:
        confirm = click.confirm(
            f"Delete all {plan.get_total_resources()} tracked resources?",
            default=False
        )
        if not confirm:
            console.print("[yellow]Cleanup cancelled[/yellow]")
            return

    result = orchestrator.run(progress_callback=print_outcome)

    console.print()
    if result.status == CleanupStatus.SUCCESS:
        console.print(Panel.fit(
            f"[green]✓ Cleanup successful[/green]\n\n"
            f"Deleted: {len(result.deleted)}\n"
            f"Duration: {result.duration:.2f}s",
            title="Cleanup Complete",
            border_style="green"
        ))
        return

    border = "yellow" if result.status == CleanupStatus.PARTIAL else "red"
    console.print(Panel.fit(
        f"[{border}]Cleanup {result.status.value}[/{border}]\n\n"
        f"Deleted: {len(result.deleted)}\n"
        f"Failed: {len(result.failed)}\n"
        f"Duration: {result.duration:.2f}s",
        title="Cleanup Incomplete",
        border_style=border
    ))
    console.print("\n[bold]Failed to delete:[/bold]")
    for outcome in result.failed:
        console.print(f"  [red]✗[/red] {outcome.kind.label} {outcome.resource_id}: {outcome.error.message}")
    console.print("\n[yellow]Failed resources stay in state; run cleanup again to retry[/yellow]")
    sys.exit(result.exit_code)


@cli.command()
@click.pass_context
@handle_errors
def orphans(ctx):
    """List lab resources in AWS that the ledger does not track.

    Matches instances by the project tags, the configured security group by
    name, and key pairs and buckets by their name prefixes. Read-only: the
    resources listed are not deleted and not added to the ledger.
    """
    rt = get_runtime(ctx)
    settings = rt.settings

    untracked = rt.orchestrator().find_untracked(
        security_group_name=settings.network.security_group,
        key_prefix=settings.instance.key_prefix,
        bucket_prefix=settings.bucket.prefix,
    )
    if untracked.is_empty():
        console.print("[green]No untracked lab resources found[/green]")
        return

    print_cleanup_plan(untracked, heading="Untracked resources")
    console.print(f"\n[yellow]{untracked.get_total_resources()} resources are not in state; "
                  f"cleanup will not delete them[/yellow]")


def ensure_security_group(rt: Runtime, name: str, ssh_cidr: Optional[str], http_cidr: Optional[str]) -> str:
    """Reuse a tracked group with this name, or create it and open SSH and HTTP."""
    existing = rt.security_groups.find_tracked(name)
    if existing:
        console.print(f"[yellow]Security group {name} already tracked ({existing}); reusing it[/yellow]")
        return existing

    network = rt.settings.network
    ssh_cidr = ssh_cidr or network.ssh_cidr or prompt_cidr("CIDR allowed to SSH (port 22)")
    http_cidr = http_cidr or network.http_cidr or prompt_cidr("CIDR allowed on HTTP (port 80)")

    group_id = rt.security_groups.create(name, network.description)
    for port, cidr in ((SSH_PORT, ssh_cidr), (HTTP_PORT, http_cidr)):
        if not rt.security_groups.authorize_ingress(group_id, port, cidr, policy=ErrorPolicy.WARN_AND_CONTINUE):
            console.print(f"[yellow]⚠ Could not open port {port} to {cidr}; continuing[/yellow]")
    return group_id


def create_key_pair(rt: Runtime, name: str) -> str:
    try:
        rt.key_pairs.create(name)
    except CredentialPersistFailure as e:
        console.print(f"[red]{e.to_user_message()}[/red]")
        sys.exit(1)
    console.print(f"[green]✓[/green] Key pair {name} saved to {rt.key_pairs.key_path(name)}")
    return name


def default_key_name(settings: Settings) -> str:
    return f"{settings.instance.key_prefix}{int(time.time())}"


def prompt_cidr(text: str) -> str:
    return click.prompt(text, value_proc=lambda value: validate_cidr(None, None, value))


def print_plan(actions: List[PlannedAction]) -> None:
    console.print("[yellow]DRY-RUN: no changes will be made[/yellow]")
    for index, action in enumerate(actions, 1):
        console.print(f"  {index}. {escape(str(action))}")


def print_cleanup_plan(plan: CleanupPlan, heading: str = "Cleanup plan") -> None:
    table = Table(title=f"{heading}: {plan.project} ({plan.region})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("ID")
    table.add_column("Name")

    index = 0
    for kind in DELETION_ORDER:
        for resource_id, name in plan.resources.get(kind, []):
            index += 1
            table.add_row(str(index), kind.label, resource_id, name)
    console.print(table)


def print_outcome(outcome: ResourceOutcome) -> None:
    if outcome.is_deleted():
        console.print(f"  [green]✓[/green] {outcome.kind.label} {outcome.resource_id}")
    else:
        console.print(f"  [red]✗[/red] {outcome.kind.label} {outcome.resource_id}: {outcome.error.message}")


if __name__ == '__main__':
    cli(obj={})
