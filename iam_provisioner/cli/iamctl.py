#!/usr/bin/env python3
"""
IAM Control CLI - Command Line Interface for the IAM Provisioner.

Provides commands for declaring account resources, running reconcile
passes, inspecting account state and viewing the audit trail.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

import click
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import Components, load_config
from ..engine import PersistError, group_diff
from ..models import AccountResource, ReconcileResult

logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()


class IAMController:
    """Main controller for IAM Provisioner operations."""

    def __init__(self, config_path: Optional[str] = None, mock_mode: Optional[bool] = None,
                 state_file: Optional[str] = None):
        """Initialize the IAM controller."""
        self.config = load_config(config_path)
        if mock_mode is not None:
            self.config["mock_mode"] = mock_mode
        if state_file:
            self.config["state_file"] = state_file

        self.stop_event = threading.Event()
        self.components = Components(self.config, self.stop_event)

        self.store = self.components.store
        self.reconciler = self.components.reconciler
        self.controller = self.components.controller
        self.audit_logger = self.components.audit_logger

        logger.debug(f"IAM Provisioner initialized (mock_mode={self.config['mock_mode']})")


def load_manifests(path: str) -> List[AccountResource]:
    """Read one or more AccountResource manifests from a YAML or JSON file."""
    with open(path, encoding="utf-8") as f:
        documents = [doc for doc in yaml.safe_load_all(f) if doc]

    resources = []
    for document in documents:
        items = document.get("items", [document]) if isinstance(document, dict) else document
        for item in items:
            resources.append(AccountResource.from_manifest(item))
    return resources


@click.group()
@click.option('--config', '-c', help='Path to configuration file')
@click.option('--mock/--real', default=None, help='Use the simulated IAM backend or real AWS IAM')
@click.option('--state-file', help='Path to the resource state file')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config, mock, state_file, verbose):
    """IAM Provisioner Control CLI - Declarative IAM account provisioning"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    ctx.ensure_object(dict)
    ctx.obj['controller'] = IAMController(config, mock, state_file)


@cli.command()
@click.argument('manifest', type=click.Path(exists=True))
@click.pass_context
def apply(ctx, manifest):
    """Declare or update account resources from a YAML/JSON manifest."""
    controller = ctx.obj['controller']

    try:
        resources = load_manifests(manifest)
    except (yaml.YAMLError, ValueError) as e:
        console.print(f"[red]Invalid manifest: {e}[/red]")
        ctx.exit(1)

    failed = False
    for resource in resources:
        try:
            stored = controller.store.apply(resource)
            console.print(f"[green]✓ {stored.name} applied (version {stored.resource_version})[/green]")
        except (ValueError, PersistError) as e:
            console.print(f"[red]✗ {resource.name}: {e}[/red]")
            failed = True

    if failed:
        ctx.exit(1)


@cli.command()
@click.argument('name')
@click.pass_context
def reconcile(ctx, name):
    """Run one reconcile pass over an account resource."""
    controller = ctx.obj['controller']

    result = controller.reconciler.reconcile(name)
    display_reconcile_result(result)

    if not result.success:
        ctx.exit(1)


@cli.command()
@click.option('--once', is_flag=True, help='Reconcile every resource until settled, then exit')
@click.option('--max-rounds', default=5, help='Maximum passes per resource with --once')
@click.pass_context
def run(ctx, once, max_rounds):
    """Run the controller over every account resource."""
    controller = ctx.obj['controller']

    if once:
        results = controller.controller.run_until_settled(
            max_rounds=max_rounds, stop_event=controller.stop_event
        )
        display_run_summary(results)
        if any(not r.success for r in results.values()):
            ctx.exit(1)
        return

    console.print("[green]Starting controller[/green]")
    console.print("[blue]Press Ctrl+C to stop[/blue]")
    try:
        controller.controller.run(controller.stop_event)
    except KeyboardInterrupt:
        controller.stop_event.set()
        console.print("[yellow]Controller stopped[/yellow]")


@cli.command()
@click.argument('name')
@click.pass_context
def show(ctx, name):
    """Show spec, status and pending group changes of an account resource."""
    controller = ctx.obj['controller']

    resource = controller.store.get(name)
    if not resource:
        console.print(f"[red]Resource {name} not found[/red]")
        ctx.exit(1)

    console.print(Panel.fit(f"[bold blue]{resource.name}[/bold blue]\nUser: {resource.spec.user_name}"))
    console.print(f"State: {resource.status.account_state.value}")
    console.print(f"Version: {resource.resource_version}")
    console.print(f"Created: {resource.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
    console.print(f"Updated: {resource.updated_at.strftime('%Y-%m-%d %H:%M:%S')}")

    to_add, to_remove = group_diff(resource.spec.groups, resource.status.user_groups)

    table = Table(title="Groups")
    table.add_column("Group", style="cyan")
    table.add_column("Desired", style="green")
    table.add_column("Joined", style="yellow")

    for group in sorted(set(resource.spec.groups) | set(resource.status.user_groups)):
        table.add_row(
            group,
            "✓" if group in resource.spec.groups else "",
            "✓" if group in resource.status.user_groups else "",
        )

    console.print(table)

    if to_add:
        console.print(f"[yellow]Pending joins: {', '.join(to_add)}[/yellow]")
    if to_remove:
        console.print(f"[magenta]Not desired but kept (removal disabled): {', '.join(to_remove)}[/magenta]")


@cli.command(name='list')
@click.option('--state', help='Filter by account state')
@click.pass_context
def list_resources(ctx, state):
    """List account resources."""
    controller = ctx.obj['controller']

    resources = controller.store.list_resources()
    if state:
        resources = [r for r in resources if r.status.account_state.value == state]

    if not resources:
        console.print("[yellow]No resources found[/yellow]")
        return

    table = Table(title=f"Account Resources ({len(resources)})")
    table.add_column("Name", style="cyan")
    table.add_column("User", style="green")
    table.add_column("State", style="magenta")
    table.add_column("Groups (joined/desired)", style="yellow")

    for resource in resources:
        joined = len(set(resource.status.user_groups) & set(resource.spec.groups))
        table.add_row(
            resource.name,
            resource.spec.user_name,
            resource.status.account_state.value,
            f"{joined}/{len(set(resource.spec.groups))}",
        )

    console.print(table)


@cli.command()
@click.argument('name')
@click.pass_context
def diff(ctx, name):
    """Show groups to join and groups no longer desired."""
    controller = ctx.obj['controller']

    resource = controller.store.get(name)
    if not resource:
        console.print(f"[red]Resource {name} not found[/red]")
        ctx.exit(1)

    to_add, to_remove = group_diff(resource.spec.groups, resource.status.user_groups)
    console.print(f"To add: {', '.join(to_add) if to_add else '-'}")
    console.print(f"To remove: {', '.join(to_remove) if to_remove else '-'}")


@cli.command()
@click.argument('name')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def delete(ctx, name, yes):
    """Delete an account resource from the store (the IAM user is left untouched)."""
    controller = ctx.obj['controller']

    if not yes and not click.confirm(f"Delete resource {name}?"):
        return

    if controller.store.delete(name):
        console.print(f"[green]✓ Deleted {name}[/green]")
    else:
        console.print(f"[red]Resource {name} not found[/red]")
        ctx.exit(1)


@cli.command()
@click.argument('name')
@click.option('--days', default=90, help='Number of days to look back')
@click.pass_context
def audit_trail(ctx, name, days):
    """Show audit trail for an account resource."""
    controller = ctx.obj['controller']

    audit_records = controller.audit_logger.get_audit_trail(name, days)

    if not audit_records:
        console.print(f"[yellow]No audit records found for {name}[/yellow]")
        return

    table = Table(title=f"Audit Trail for {name}")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Stage", style="green")
    table.add_column("Action", style="magenta")
    table.add_column("Target", style="blue")
    table.add_column("Success", style="red")

    for record in audit_records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.stage,
            record.action,
            record.target,
            "✓" if record.success else "✗",
        )

    console.print(table)


@cli.command()
@click.pass_context
def stats(ctx):
    """Show resource statistics."""
    controller = ctx.obj['controller']

    summary = controller.store.get_summary()

    console.print("[bold blue]Resource Statistics[/bold blue]")
    console.print(f"Total Resources: {summary['total_resources']}")
    console.print(f"Groups Joined: {summary['total_groups_joined']}")
    console.print(f"Resources With Pending Groups: {summary['resources_pending_groups']}")

    if summary['resources_by_state']:
        console.print("\nResources by State:")
        for state, count in summary['resources_by_state'].items():
            console.print(f"  {state}: {count}")


@cli.command()
@click.option('--port', default=8000, help='Port to run the API server on')
@click.option('--host', default='127.0.0.1', help='Host to bind the API server to')
@click.pass_context
def serve(ctx, port, host):
    """Start the IAM Provisioner API server."""
    from ..api.server import start_server

    console.print(f"[green]Starting IAM Provisioner API server on {host}:{port}[/green]")
    console.print("[blue]Press Ctrl+C to stop[/blue]")

    start_server(host=host, port=port, reload=False)


def display_reconcile_result(result: ReconcileResult):
    """Display the outcome of one reconcile pass."""
    if not result.found:
        console.print(f"[yellow]Resource {result.resource_name} not found, nothing to do[/yellow]")
        return

    if result.success:
        console.print("[green]✓ Reconcile completed successfully[/green]")
    else:
        console.print(f"[red]✗ Reconcile failed at stage {result.failed_stage}[/red]")

    table = Table(title="Reconcile Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")

    table.add_row("Reconcile ID", result.reconcile_id)
    table.add_row("Resource", result.resource_name)
    table.add_row("State", result.state.value if result.state else "N/A")
    table.add_row("Actions", str(len(result.actions_taken)))
    table.add_row("Successful", str(sum(1 for a in result.actions_taken if a.get('success', False))))
    table.add_row("Failed", str(sum(1 for a in result.actions_taken if not a.get('success', False))))
    if result.groups_to_remove:
        table.add_row("Not removed", ", ".join(result.groups_to_remove))

    console.print(table)

    if result.error:
        console.print(f"[red]Error: {result.error}[/red]")


def display_run_summary(results: Dict[str, Any]):
    """Display the last result of every resource after a controller run."""
    if not results:
        console.print("[yellow]No resources to reconcile[/yellow]")
        return

    table = Table(title="Controller Run")
    table.add_column("Resource", style="cyan")
    table.add_column("State", style="magenta")
    table.add_column("Result", style="green")
    table.add_column("Error", style="red")

    for name, result in sorted(results.items()):
        table.add_row(
            name,
            result.state.value if result.state else "N/A",
            "✓" if result.success else "✗",
            result.error or "",
        )

    console.print(table)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
