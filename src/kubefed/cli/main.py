"""kubefed-core CLI.

Commands:
    run             Start the scheduling manager, sync and status controllers
    plan            Show how a scheduling preference distributes across clusters
    validate        Validate type config and clusters files
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any

import click
import yaml

from kubefed import __version__
from kubefed.client.memory import InMemoryCluster
from kubefed.client.resource import ClientFactory
from kubefed.cluster import ClusterEntry, ClusterRegistry, ClusterSnapshot, load_cluster_entries
from kubefed.config import ConfigError, ControllerConfig, load_config
from kubefed.scheduling.manager import start_scheduling_manager
from kubefed.scheduling.planner import schedule
from kubefed.scheduling.types import PlanError, SchedulingPreference, default_scheduling_types
from kubefed.sync.clusterstatus import ClusterStatusController, start_cluster_status_controller
from kubefed.sync.controller import SyncController, start_sync_controller
from kubefed.typeregistry import TypeRegistry, TypeRegistryError, load_type_configs

logger = logging.getLogger(__name__)


def _load_cfg(config_path: str | None) -> ControllerConfig:
    try:
        return load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)


def _or(explicit: str | None, cfg_val: str | None) -> str | None:
    """Return first non-None value: explicit CLI flag > config."""
    return explicit or cfg_val


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    help="Logging verbosity",
)
def cli(log_level: str) -> None:
    """kubefed-core: propagation and scheduling for federated Kubernetes resources."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# --- run command ---


def _member_factory(entry: ClusterEntry, dry_run: bool) -> ClientFactory:
    if dry_run:
        return InMemoryCluster(entry.name)
    from kubefed.client.kube import ClusterCredentials, build_api_client, kubernetes_client_factory

    credentials = ClusterCredentials(
        kubeconfig=entry.kubeconfig,
        context=entry.context,
        host=entry.host,
        token=entry.token,
        verify_ssl=entry.verify_ssl,
    )
    return kubernetes_client_factory(build_api_client(credentials))


def _host_factory(cfg: ControllerConfig, dry_run: bool) -> ClientFactory:
    if dry_run:
        return InMemoryCluster("host")
    from kubefed.client.kube import ClusterCredentials, build_api_client, kubernetes_client_factory

    credentials = ClusterCredentials(
        kubeconfig=cfg.kubeconfig,
        context=cfg.context,
        in_cluster=cfg.in_cluster,
    )
    return kubernetes_client_factory(build_api_client(credentials))


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to kubefed.yaml")
@click.option("--types", "types_path", default=None, help="Type config YAML file")
@click.option("--clusters", "clusters_path", default=None, help="Member clusters YAML file")
@click.option(
    "--dry-run",
    is_flag=True,
    help="Use in-memory API servers instead of real clusters",
)
def run(
    config_path: str | None,
    types_path: str | None,
    clusters_path: str | None,
    dry_run: bool,
) -> None:
    """Run the scheduling manager plus sync and status controllers until interrupted."""
    cfg = _load_cfg(config_path)
    types_file = _or(types_path, cfg.type_configs)
    clusters_file = _or(clusters_path, cfg.clusters)
    if types_file is None or clusters_file is None:
        click.echo("Error: both a type config file and a clusters file are required", err=True)
        sys.exit(1)

    try:
        type_configs = load_type_configs(types_file)
        entries = load_cluster_entries(clusters_file)
    except (FileNotFoundError, TypeRegistryError, ConfigError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    try:
        host = _host_factory(cfg, dry_run)
        clusters = ClusterRegistry()
        for entry in entries:
            clusters.add_cluster(
                ClusterSnapshot(
                    name=entry.name,
                    client_factory=_member_factory(entry, dry_run),
                    ready=entry.ready,
                    labels=dict(entry.labels),
                )
            )
    except ImportError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    registry = TypeRegistry(type_configs)
    stop_event = threading.Event()

    def _request_stop(signum: int, frame: Any) -> None:
        logger.info("Received signal %d, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    scheduling_kinds = set(default_scheduling_types().kinds())
    namespace_type = next((tc for tc in type_configs if tc.target_is_namespace), None)
    plain_controllers: list[SyncController] = []
    for tc in type_configs:
        if tc.scheduling_preference_kind in scheduling_kinds:
            continue
        plain_controllers.append(
            start_sync_controller(
                cfg,
                tc,
                stop_event,
                host_factory=host,
                cluster_registry=clusters,
                namespace_type_config=namespace_type,
            )
        )
    status_controllers: list[ClusterStatusController] = [
        start_cluster_status_controller(
            cfg, tc, stop_event, host_factory=host, cluster_registry=clusters
        )
        for tc in type_configs
        if tc.status_enabled
    ]
    manager = start_scheduling_manager(
        cfg,
        stop_event,
        type_registry=registry,
        host_factory=host,
        cluster_registry=clusters,
    )

    click.echo(
        f"kubefed-core {__version__}: {len(type_configs)} type(s), "
        f"{len(entries)} cluster(s){' [dry run]' if dry_run else ''}"
    )
    stop_event.wait()
    manager.wait()
    for controller in plain_controllers:
        controller.wait()
    for status_controller in status_controllers:
        status_controller.wait()
    click.echo("Stopped.")


# --- plan command ---


@cli.command()
@click.argument("preference_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--cluster",
    "-c",
    "clusters",
    multiple=True,
    required=True,
    help="Ready cluster name (repeatable)",
)
@click.option("--json-output", is_flag=True, help="Output as JSON")
def plan(preference_file: str, clusters: tuple[str, ...], json_output: bool) -> None:
    """Show the distribution a scheduling preference produces."""
    try:
        obj = yaml.safe_load(Path(preference_file).read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        click.echo(f"Error: failed to parse {preference_file}: {e}", err=True)
        sys.exit(1)
    if not isinstance(obj, dict):
        click.echo(f"Error: expected a YAML mapping in {preference_file}", err=True)
        sys.exit(1)

    kind = default_scheduling_types().get(obj.get("kind", ""))
    if kind is None:
        known = ", ".join(default_scheduling_types().kinds())
        click.echo(f"Error: unknown preference kind {obj.get('kind')!r} (known: {known})", err=True)
        sys.exit(1)

    try:
        preference = SchedulingPreference.from_object(obj, kind)
    except PlanError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    result = schedule(preference, clusters)

    if json_output:
        output = {
            "placement": result.placement(),
            "allocations": result.allocations,
        }
        click.echo(json.dumps(output, indent=2, sort_keys=True))
        return

    click.echo(f"{kind.kind} {preference.name} -> {preference.target_kind}")
    for cluster in sorted(result.allocations):
        values = result.allocations[cluster]
        rendered = "  ".join(f"{path}={value}" for path, value in sorted(values.items()))
        marker = "*" if cluster in result.placement() else " "
        click.echo(f" {marker} {cluster:<24} {rendered}")


# --- validate command ---


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to kubefed.yaml")
@click.option("--types", "types_path", default=None, help="Type config YAML file")
@click.option("--clusters", "clusters_path", default=None, help="Member clusters YAML file")
def validate(
    config_path: str | None,
    types_path: str | None,
    clusters_path: str | None,
) -> None:
    """Validate the type config and clusters files."""
    cfg = _load_cfg(config_path)
    errors = 0

    types_file = _or(types_path, cfg.type_configs)
    if types_file is not None:
        try:
            configs = load_type_configs(types_file)
            kinds = set(default_scheduling_types().kinds())
            click.echo(click.style("OK", fg="green") + f"    {len(configs)} type config(s)")
            for tc in configs:
                pref = tc.scheduling_preference_kind
                if pref and pref not in kinds:
                    click.echo(
                        click.style("WARN", fg="yellow")
                        + f"  {tc.name}: unknown scheduling kind {pref}"
                    )
        except (FileNotFoundError, TypeRegistryError) as e:
            click.echo(click.style("ERROR", fg="red") + f" {e}", err=True)
            errors += 1

    clusters_file = _or(clusters_path, cfg.clusters)
    if clusters_file is not None:
        try:
            entries = load_cluster_entries(clusters_file)
            click.echo(click.style("OK", fg="green") + f"    {len(entries)} cluster(s)")
        except (FileNotFoundError, ConfigError) as e:
            click.echo(click.style("ERROR", fg="red") + f" {e}", err=True)
            errors += 1

    if types_file is None and clusters_file is None:
        click.echo("Nothing to validate.")
    if errors:
        sys.exit(1)


if __name__ == "__main__":
    cli()
