#!/usr/bin/env python3
"""
CLI tool for the pcluster operator
Provides kubectl-like interface for managing ParallelCluster clusters
"""

import json
import time

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = "http://localhost:8000/api/v1"


class ManifestError(click.ClickException):
    """A cluster manifest is missing required fields"""


def _cluster_body(document: dict, filename: str) -> dict:
    name = (document.get("metadata") or {}).get("name")
    for_provider = (document.get("spec") or {}).get("forProvider") or {}
    region = for_provider.get("region")
    configuration = for_provider.get("clusterConfiguration")

    missing = [
        field
        for field, value in (
            ("metadata.name", name),
            ("spec.forProvider.region", region),
            ("spec.forProvider.clusterConfiguration", configuration),
        )
        if not value
    ]
    if missing:
        raise ManifestError(f"{filename}: missing {', '.join(missing)}")

    if not isinstance(configuration, str):
        configuration = yaml.safe_dump(configuration, default_flow_style=False)

    return {"name": name, "region": region, "clusterConfiguration": configuration}


def load_manifests(filename: str) -> list:
    """
    Read Cluster manifests and return one API request body per cluster.

    Manifests are Kubernetes-shaped:
    kind: Cluster, metadata.name, spec.forProvider.{region,clusterConfiguration}.
    clusterConfiguration may be a YAML string or an inline mapping. Documents
    of any other kind in a multi-document YAML file are skipped.
    """
    with open(filename, "r") as f:
        if filename.endswith(".json"):
            documents = [json.load(f)]
        else:
            documents = [d for d in yaml.safe_load_all(f) if d is not None]

    bodies = []
    for document in documents:
        if not isinstance(document, dict):
            raise ManifestError(f"{filename}: manifest must be a mapping")
        if document.get("kind", "Cluster") != "Cluster":
            continue
        bodies.append(_cluster_body(document, filename))

    if not bodies:
        raise ManifestError(f"{filename}: no Cluster manifests found")
    return bodies


class PClusterOperatorCLI:
    """CLI client for the pcluster operator"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def exists(self, name: str) -> bool:
        """Whether the API knows a cluster by this name"""
        try:
            response = requests.get(f"{self.base_url}/clusters/{name}")
            if response.status_code == 404:
                return False
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise click.ClickException(str(e))
        return True


@click.group()
@click.option(
    "--api-url",
    envvar="PCLUSTERCTL_API_URL",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the operator API",
)
@click.pass_context
def cli(ctx, api_url):
    """pcluster operator CLI - kubectl-like interface for ParallelCluster clusters"""
    ctx.obj = PClusterOperatorCLI(api_url)


@cli.command()
@click.option(
    "--filename", "-f", required=True, type=click.Path(exists=True, dir_okay=False)
)
@click.pass_obj
def apply(client, filename):
    """Create or update clusters from a manifest file"""
    failed = False
    for body in load_manifests(filename):
        if client.exists(body["name"]):
            result = client._make_request(
                "PUT",
                f"/clusters/{body['name']}",
                json={
                    "region": body["region"],
                    "clusterConfiguration": body["clusterConfiguration"],
                },
            )
            verb = "configured"
        else:
            result = client._make_request("POST", "/clusters", json=body)
            verb = "created"

        if result is None:
            failed = True
            continue
        click.echo(
            f"cluster/{result['name']} {verb} "
            f"(generation {result['generation']}, status {result['status']})"
        )

    if failed:
        raise SystemExit(1)


@cli.command()
@click.option("--status", "-s", "status_filter", default=None, help="Filter by status")
@click.option("--region", "-r", default=None, help="Filter by region")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "wide"]), default="table"
)
@click.pass_obj
def get(client, status_filter, region, output):
    """List clusters"""
    params = {}
    if status_filter:
        params["status"] = status_filter
    if region:
        params["region"] = region

    result = client._make_request("GET", "/clusters", params=params)
    if result is None:
        raise SystemExit(1)

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    if not result:
        click.echo("No clusters found")
        return

    headers = ["NAME", "REGION", "STATUS", "CLUSTER STATUS", "UP TO DATE"]
    if output == "wide":
        headers += ["GENERATION", "SCHEDULER", "LAST RECONCILE"]

    rows = []
    for entry in result:
        row = [
            entry["name"],
            entry["region"],
            entry["status"],
            entry.get("cluster_status") or "-",
            "yes" if entry.get("up_to_date") else "no",
        ]
        if output == "wide":
            row += [
                f"{entry['observed_generation']}/{entry['generation']}",
                entry.get("scheduler_type") or "-",
                entry.get("last_reconcile_time") or "Never",
            ]
        rows.append(row)

    click.echo(tabulate(rows, headers=headers, tablefmt="plain"))


@cli.command()
@click.argument("name")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, name, output):
    """Describe a cluster and its conditions"""
    result = client._make_request("GET", f"/clusters/{name}")
    if result is None:
        raise SystemExit(1)

    conditions = client._make_request("GET", f"/clusters/{name}/conditions") or []
    result["conditions"] = conditions

    if output == "yaml":
        click.echo(yaml.dump(result, default_flow_style=False, sort_keys=False))
    else:
        click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("name")
@click.confirmation_option(prompt="Are you sure you want to delete this cluster?")
@click.pass_obj
def delete(client, name):
    """Delete a cluster (runs pcluster delete-cluster)"""
    result = client._make_request("DELETE", f"/clusters/{name}")

    if result is None:
        raise SystemExit(1)
    click.echo(f"cluster/{name} marked for deletion")


@cli.command()
@click.argument("name")
@click.pass_obj
def reconcile(client, name):
    """Manually trigger reconciliation for a cluster"""
    result = client._make_request("POST", f"/clusters/{name}/reconcile")

    if result is None:
        raise SystemExit(1)
    click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("name")
@click.option("--limit", "-l", default=10, help="Number of history entries to show")
@click.pass_obj
def history(client, name, limit):
    """Show reconciliation history for a cluster"""
    result = client._make_request(
        "GET", f"/clusters/{name}/history", params={"limit": limit}
    )
    if result is None:
        raise SystemExit(1)

    headers = [
        "ID",
        "Generation",
        "Success",
        "Operation",
        "Trigger",
        "Duration (s)",
        "Error",
        "Time",
    ]
    rows = []
    for entry in result:
        duration = entry.get("duration_seconds")
        rows.append(
            [
                entry["id"],
                entry.get("generation"),
                "✓" if entry["success"] else "✗",
                entry["operation"],
                entry.get("trigger_reason") or "-",
                f"{duration:.1f}" if duration is not None else "-",
                entry.get("error_message") or "",
                entry["reconcile_time"],
            ]
        )

    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("name")
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, name, follow, interval):
    """Show status of a cluster"""

    def show_status():
        result = client._make_request("GET", f"/clusters/{name}")
        if not result:
            return False
        if follow:
            click.clear()
        click.echo(f"Cluster: {result['name']} ({result['region']})")
        click.echo(f"Status: {result['status']}")
        click.echo(f"Message: {result.get('status_message') or 'N/A'}")
        click.echo(f"Cluster Status: {result.get('cluster_status') or 'Unknown'}")
        click.echo(f"Stack: {result.get('cloudformation_stack_arn') or 'N/A'}")
        click.echo(f"Scheduler: {result.get('scheduler_type') or 'N/A'}")
        click.echo(f"Generation: {result['generation']}")
        click.echo(f"Observed Generation: {result['observed_generation']}")
        click.echo(f"Last Reconcile: {result.get('last_reconcile_time') or 'Never'}")

        if result["generation"] != result["observed_generation"]:
            click.echo("\n⚠️  Cluster is out of sync (reconciliation pending)")
        elif result.get("up_to_date"):
            click.echo("\n✓ Cluster is up to date")
        return True

    if not show_status():
        raise SystemExit(1)

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


if __name__ == "__main__":
    cli()
