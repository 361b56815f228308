"""
Admin CLI for the container fleet.

Manages worker templates directly in the fleet database, and talks to a
running controller over HTTP for node and demand operations.
"""

import asyncio
import json
import os
import sys

import click

from fleet_client import client
from fleet_common.errors import ConfigurationError
from fleet_common.models import Template
from fleet_persistence.sqlite_repository import SQLiteFleetRepository


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("FLEET_DB_PATH", "fleet.db")


def get_repository() -> SQLiteFleetRepository:
    """Get the repository instance."""
    return SQLiteFleetRepository(get_db_path())


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


@click.group()
def cli():
    """Fleet Admin - Manage templates and workers of the container fleet."""
    pass


@cli.group()
def template():
    """Manage worker templates."""
    pass


@cli.group()
def node():
    """Inspect and terminate running workers."""
    pass


@cli.group()
def demand():
    """Report demand and request capacity."""
    pass


# ============================================================================
# Template Commands
# ============================================================================


@template.command("add")
@click.option("--image", required=True, help="Container image to run")
@click.option("--labels", default="", help="Space separated label atoms")
@click.option("--cap", default="", help="Maximum live containers (empty: unbounded)")
@click.option("--min-idle", default="", help="Idle containers to keep warm")
@click.option("--ssh-port", default="", help="Host port to publish the agent port on")
@click.option("--credentials-id", default=None, help="Credential reference")
@click.option("--jvm-options", default=None, help="Options passed to the agent JVM")
@click.option("--java-path", default=None, help="Java executable inside the image")
@click.option("--prefix-start-cmd", default=None, help="Prepended to the agent command")
@click.option("--suffix-start-cmd", default=None, help="Appended to the agent command")
@click.option("--remote-fs", default=None, help="Agent working directory")
@click.option("--commit", "commit_on_completion", is_flag=True, help="Snapshot the container after its job")
@click.option("--prefix-name", "prefix_name_with_image", is_flag=True, help="Prefix node names with the image")
def template_add(
    image: str,
    labels: str,
    cap: str,
    min_idle: str,
    ssh_port: str,
    credentials_id: str | None,
    jvm_options: str | None,
    java_path: str | None,
    prefix_start_cmd: str | None,
    suffix_start_cmd: str | None,
    remote_fs: str | None,
    commit_on_completion: bool,
    prefix_name_with_image: bool,
):
    """Add a worker template."""
    try:
        tmpl = Template.from_strings(
            image=image,
            label_selector=labels,
            capacity=cap,
            min_idle=min_idle,
            ssh_port=ssh_port,
            credentials_id=credentials_id,
            jvm_options=jvm_options,
            java_path=java_path,
            prefix_start_cmd=prefix_start_cmd,
            suffix_start_cmd=suffix_start_cmd,
            remote_fs=remote_fs,
            commit_on_completion=commit_on_completion,
            prefix_name_with_image=prefix_name_with_image,
        )
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    async def add():
        repo = get_repository()
        await repo.initialize()

        try:
            existing = await repo.list_templates()
            if any(t.image == tmpl.image for t in existing):
                click.echo(
                    f"Error: Template for image {tmpl.image} already exists", err=True
                )
                sys.exit(1)

            await repo.add_template(tmpl)

            click.echo("✓ Template added successfully")
            click.echo(f"  Image:    {tmpl.image}")
            click.echo(f"  Labels:   {tmpl.label_selector or '(any)'}")
            click.echo(f"  Cap:      {tmpl.capacity_str or 'unbounded'}")
            click.echo(f"  Min idle: {tmpl.min_idle_floor}")

        finally:
            await repo.close()

    run_async(add())


@template.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def template_list(json_output: bool):
    """List worker templates in match order."""

    async def list_templates():
        repo = get_repository()
        await repo.initialize()

        try:
            templates = await repo.list_templates()

            if json_output:
                click.echo(json.dumps([t.to_dict() for t in templates], indent=2))
                return

            if not templates:
                click.echo("No templates found.")
                return

            click.echo(f"\n{'Image':<40} {'Labels':<30} {'Cap':<10} {'Min idle':<8}")
            click.echo("-" * 90)
            for t in templates:
                cap = t.capacity_str or "-"
                click.echo(
                    f"{t.image:<40} {t.label_selector:<30} {cap:<10} {t.min_idle_floor:<8}"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(list_templates())


@template.command("remove")
@click.argument("image")
@click.option("--yes", is_flag=True, help="Skip confirmation prompt")
def template_remove(image: str, yes: bool):
    """Remove the template for IMAGE."""
    if not yes:
        click.confirm(f"Remove template for {image}?", abort=True)

    async def remove():
        repo = get_repository()
        await repo.initialize()

        try:
            removed = await repo.remove_template(image)
            if not removed:
                click.echo(f"Error: Template not found: {image}", err=True)
                sys.exit(1)
            click.echo(f"✓ Template for {image} removed")

        finally:
            await repo.close()

    run_async(remove())


# ============================================================================
# Node Commands
# ============================================================================


@node.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def node_list(json_output: bool):
    """List registered workers."""
    try:
        nodes = client.list_nodes()
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(nodes, indent=2))
        return

    if not nodes:
        click.echo("No nodes found.")
        return

    click.echo(f"\n{'Name':<30} {'Image':<30} {'State':<12}")
    click.echo("-" * 74)
    for n in nodes:
        click.echo(f"{n['name']:<30} {n['image']:<30} {n['state']:<12}")
    click.echo()


@node.command("terminate")
@click.argument("name")
def node_terminate(name: str):
    """Terminate the worker NAME."""
    try:
        client.terminate_node(name)
    except LookupError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ Termination of {name} scheduled")


@node.command("snapshot")
@click.argument("job_name")
@click.argument("run_id")
def node_snapshot(job_name: str, run_id: str):
    """Show the image committed for run RUN_ID of JOB_NAME."""
    try:
        snapshot = client.get_snapshot(job_name, run_id)
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if snapshot is None:
        click.echo(f"No snapshot for {job_name} #{run_id}", err=True)
        sys.exit(1)

    click.echo(f"Image:     {snapshot['image_id']}")
    click.echo(f"Tag:       {snapshot['tag']}")
    click.echo(f"Container: {snapshot['container_id']}")
    click.echo(f"Engine:    {snapshot['server_url'] or '(local)'}")


# ============================================================================
# Demand Commands
# ============================================================================


@demand.command("report")
@click.option("--label", default="", help="Label expression the figures are for")
@click.option("--queue", "queue_length", type=int, required=True, help="Queued work units")
@click.option("--compute-queue", "compute_queue_length", type=int, required=True, help="Queued units that need a fresh worker")
@click.option("--idle", "idle_executors", type=int, default=0, help="Idle executors")
def demand_report(
    label: str, queue_length: int, compute_queue_length: int, idle_executors: int
):
    """Report load figures for a label."""
    try:
        client.report_load(label, queue_length, compute_queue_length, idle_executors)
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo("✓ Load reported")


@demand.command("provision")
@click.option("--label", default=None, help="Label expression to provision for")
@click.option("--excess", type=int, required=True, help="Excess workload to cover")
def demand_provision(label: str | None, excess: int):
    """Ask the controller for capacity."""
    try:
        planned = client.request_provision(label, excess)
    except LookupError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not planned:
        click.echo("No capacity available.")
        return

    click.echo(f"✓ {len(planned)} worker(s) planned")
    for unit in planned:
        click.echo(f"  {unit['display_name']} ({unit['executors']} executor)")


if __name__ == "__main__":
    cli()
