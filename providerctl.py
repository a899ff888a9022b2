#!/usr/bin/env python3
"""
CLI tool for the provider operator.

Provides a kubectl-like interface for managing providers, their secrets and
config objects through the operator's HTTP API.
"""

import json
import os
import time
from typing import Any, Dict, List, Optional

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("PROVIDERCTL_SERVER", "http://localhost:8000/api/v1")

PROVIDER_KINDS = (
    "CoreProvider",
    "BootstrapProvider",
    "ControlPlaneProvider",
    "InfrastructureProvider",
)


class ProviderOperatorCLI:
    """CLI client for the provider operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            if response.status_code == 204 or not response.content:
                return {}
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

    def find_provider(self, kind: str, namespace: str, name: str) -> Optional[Dict]:
        providers = self._make_request(
            "GET", "/providers", params={"kind": kind, "namespace": namespace}
        )
        for provider in providers or []:
            if provider["name"] == name:
                return provider
        return None


def load_documents(filename: str) -> List[Dict[str, Any]]:
    """Read every document from a YAML (multi-document) or JSON file."""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return [doc for doc in yaml.safe_load_all(f) if doc]
        data = json.load(f)
    return data if isinstance(data, list) else [data]


def installed_condition(provider: Dict[str, Any]) -> str:
    for condition in provider.get("status", {}).get("conditions", []):
        if condition.get("type") == "ProviderInstalled":
            return condition.get("status", "Unknown")
    return "Unknown"


def apply_document(client: ProviderOperatorCLI, doc: Dict[str, Any]) -> Optional[str]:
    """Create or update the object described by doc. Returns a summary line."""
    kind = doc.get("kind")
    metadata = doc.get("metadata") or {}
    name = metadata.get("name")
    namespace = metadata.get("namespace", "default")
    if not kind or not name:
        raise click.UsageError("every document needs kind and metadata.name")

    if kind == "Secret":
        result = client._make_request(
            "PUT", f"/secrets/{namespace}/{name}", json={"data": doc.get("data") or {}}
        )
        return result and f"secret/{namespace}/{name} configured"

    if kind == "ConfigObject":
        body = {"data": doc.get("data") or {}, "labels": metadata.get("labels") or {}}
        result = client._make_request(
            "PUT", f"/config-objects/{namespace}/{name}", json=body
        )
        return result and f"configobject/{namespace}/{name} configured"

    if kind not in PROVIDER_KINDS:
        raise click.UsageError(f"unsupported kind {kind!r}")

    spec = doc.get("spec") or {}
    existing = client.find_provider(kind, namespace, name)
    if existing:
        result = client._make_request(
            "PUT", f"/providers/{existing['id']}", json={"spec": spec}
        )
        return result and (
            f"{kind.lower()}/{namespace}/{name} configured "
            f"(generation {result['generation']})"
        )

    result = client._make_request(
        "POST",
        "/providers",
        json={"name": name, "namespace": namespace, "kind": kind, "spec": spec},
    )
    return result and f"{kind.lower()}/{namespace}/{name} created (ID {result['id']})"


@click.group()
@click.option(
    "--server",
    "-s",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the operator API",
)
@click.pass_context
def cli(ctx, server):
    """Provider operator CLI - kubectl-like interface for providers"""
    ctx.obj = ProviderOperatorCLI(server)


@cli.command()
@click.option(
    "--filename", "-f", required=True, type=click.Path(exists=True), help="YAML/JSON file"
)
@click.pass_obj
def apply(client, filename):
    """Apply providers, secrets and config objects from a file"""
    for doc in load_documents(filename):
        summary = apply_document(client, doc)
        if summary:
            click.echo(summary)


@cli.command()
@click.argument("what", type=click.Choice(["providers", "secrets", "configobjects"]))
@click.option("--namespace", "-n", default=None, help="Filter by namespace")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "wide"]), default="table"
)
@click.pass_obj
def get(client, what, namespace, output):
    """List providers, secrets or config objects"""
    if what == "secrets":
        params = {"namespace": namespace} if namespace else {}
        result = client._make_request("GET", "/secrets", params=params)
        if result is None:
            return
        rows = [[s["namespace"], s["name"], ", ".join(s["keys"])] for s in result]
        click.echo(tabulate(rows, headers=["NAMESPACE", "NAME", "KEYS"]))
        return

    if what == "configobjects":
        if not namespace:
            raise click.UsageError("--namespace is required for configobjects")
        result = client._make_request("GET", f"/config-objects/{namespace}")
        if result is None:
            return
        rows = [
            [o["namespace"], o["name"], ",".join(f"{k}={v}" for k, v in o["labels"].items())]
            for o in result
        ]
        click.echo(tabulate(rows, headers=["NAMESPACE", "NAME", "LABELS"]))
        return

    params = {"namespace": namespace} if namespace else {}
    result = client._make_request("GET", "/providers", params=params)
    if result is None:
        return

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    headers = ["ID", "KIND", "NAMESPACE", "NAME", "VERSION", "INSTALLED", "STATE"]
    if output == "wide":
        headers += ["CONTRACT", "GENERATION", "MESSAGE"]

    rows = []
    for provider in result:
        row = [
            provider["id"],
            provider["kind"],
            provider["namespace"],
            provider["name"],
            provider.get("spec", {}).get("version") or "",
            installed_condition(provider),
            "deleting" if provider.get("deleting") else provider["state"],
        ]
        if output == "wide":
            row += [
                provider.get("status", {}).get("contract") or "",
                provider["generation"],
                provider.get("status_message") or "",
            ]
        rows.append(row)

    click.echo(tabulate(rows, headers=headers))


@cli.command()
@click.argument("provider_id", type=int)
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, provider_id, output):
    """Describe a provider"""
    result = client._make_request("GET", f"/providers/{provider_id}")

    if result:
        if output == "yaml":
            click.echo(yaml.safe_dump(result, default_flow_style=False))
        else:
            click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("provider_id", type=int)
@click.pass_obj
def components(client, provider_id):
    """Show the objects installed for a provider"""
    result = client._make_request("GET", f"/providers/{provider_id}/components")
    if not result:
        return

    record = result.get("record")
    if record:
        click.echo(f"Record: {record['namespace']}/{record['name']} ({record['version']})")
    else:
        click.echo("Record: none")

    rows = [
        [o["kind"], o["object_namespace"], o["object_name"], o["version"]]
        for o in result.get("objects", [])
    ]
    click.echo(tabulate(rows, headers=["KIND", "NAMESPACE", "NAME", "VERSION"], tablefmt="grid"))


@cli.command()
@click.argument("provider_id", type=int)
@click.confirmation_option(prompt="Are you sure you want to delete this provider?")
@click.pass_obj
def delete(client, provider_id):
    """Delete a provider and its installed components"""
    result = client._make_request("DELETE", f"/providers/{provider_id}")

    if result:
        click.echo("Provider marked for deletion")


@cli.command()
@click.argument("provider_id", type=int)
@click.pass_obj
def reconcile(client, provider_id):
    """Manually trigger reconciliation for a provider"""
    result = client._make_request("POST", f"/providers/{provider_id}/reconcile")

    if result:
        click.echo("Reconciliation triggered successfully")


@cli.command("create-secret")
@click.argument("namespace")
@click.argument("name")
@click.option(
    "--from-literal", "literals", multiple=True, help="KEY=VALUE pair, repeatable"
)
@click.pass_obj
def create_secret(client, namespace, name, literals):
    """Create or replace a secret holding provider variables"""
    data = {}
    for literal in literals:
        key, sep, value = literal.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {literal!r}")
        data[key] = value

    result = client._make_request(
        "PUT", f"/secrets/{namespace}/{name}", json={"data": data}
    )
    if result:
        click.echo(f"secret/{namespace}/{name} configured")


@cli.command()
@click.argument("provider_id", type=int)
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, provider_id, follow, interval):
    """Show status and conditions of a provider"""

    def show_status():
        result = client._make_request("GET", f"/providers/{provider_id}")
        if not result:
            return
        provider_status = result.get("status", {})
        click.clear()
        click.echo(f"Provider: {result['kind']} {result['namespace']}/{result['name']}")
        click.echo(f"State: {result['state']}")
        click.echo(f"Message: {result.get('status_message') or 'N/A'}")
        click.echo(f"Version: {result.get('spec', {}).get('version') or 'N/A'}")
        click.echo(f"Contract: {provider_status.get('contract') or 'N/A'}")
        click.echo(f"Generation: {result['generation']}")
        click.echo(
            f"Observed Generation: {provider_status.get('observed_generation', 0)}"
        )

        rows = [
            [c["type"], c["status"], c.get("reason", ""), c.get("message", "")]
            for c in provider_status.get("conditions", [])
        ]
        if rows:
            click.echo("")
            click.echo(tabulate(rows, headers=["TYPE", "STATUS", "REASON", "MESSAGE"]))

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


if __name__ == "__main__":
    cli()
