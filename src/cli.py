#!/usr/bin/env python3
"""
CLI tool for extension auto-registration
Inspects the agent's registry and previews what a workload would register
"""

import json
import os

import click
import requests
import yaml
from tabulate import tabulate

from extractor import ExtensionExtractor
from models import ExtensionDescriptor, Pod, Service
from registrar import AUTH_USER, EXTENSIONS_PATH


def default_agent_url() -> str:
    host = os.getenv("AGENT_HOST", "localhost")
    port = os.getenv("AGENT_PORT", "42899")
    return f"http://{host}:{port}"


def parse_label_options(values, option_name: str):
    """Turn repeated ``key=value`` options into a label dict"""
    labels = {}
    for value in values:
        key, sep, label_value = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(
                f"expected key=value, got {value!r}", param_hint=option_name
            )
        labels[key] = label_value
    return labels


def load_manifest(filename: str):
    """Read a YAML/JSON manifest"""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return yaml.safe_load(f)
        return json.load(f)


def render(data, output: str) -> str:
    if output == "yaml":
        return yaml.dump(data, default_flow_style=False, sort_keys=False)
    return json.dumps(data, indent=2)


class AgentRegistryCLI:
    """CLI client for the agent's extension registry"""

    def __init__(self, base_url: str, agent_key: str = "", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.agent_key = agent_key
        self.timeout = timeout

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the agent"""
        url = f"{self.base_url}{endpoint}"
        if self.agent_key:
            kwargs.setdefault("auth", (AUTH_USER, self.agent_key))
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            if not response.content:
                return []
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                click.echo(f"Response: {e.response.text}", err=True)
            return None
        except ValueError as e:
            click.echo(f"Error: invalid response from agent: {e}", err=True)
            return None

    def list_extensions(self):
        result = self._make_request("GET", EXTENSIONS_PATH)
        if result is None:
            return None
        return [ExtensionDescriptor.from_dict(item) for item in result]


@click.group()
def cli():
    """Extension auto-registration CLI - inspect and preview extension registrations"""
    pass


@cli.command(name="list")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.option(
    "--agent-url",
    default=default_agent_url,
    show_default="from AGENT_HOST/AGENT_PORT",
    help="Base URL of the agent",
)
@click.option(
    "--agent-key",
    envvar="AGENT_KEY",
    default="",
    help="Agent key used for basic auth (defaults to $AGENT_KEY)",
)
def list_extensions(output, agent_url, agent_key):
    """List extensions registered with the agent"""
    client = AgentRegistryCLI(agent_url, agent_key)

    extensions = client.list_extensions()
    if extensions is None:
        raise SystemExit(1)

    if output in ("json", "yaml"):
        click.echo(render([e.to_dict() for e in extensions], output))
        return

    if not extensions:
        click.echo("No extensions registered")
        return

    headers = ["URL", "Restricted Ports", "Restricted IPs", "Types"]
    rows = []
    for extension in extensions:
        rows.append(
            [
                extension.url or extension.unix_socket,
                "\n".join(
                    f"{port} ({label})"
                    for port, label in sorted(extension.restricted_ports.items())
                ),
                "\n".join(extension.restricted_ips),
                ", ".join(extension.types),
            ]
        )

    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("pod_file", type=click.Path(exists=True))
@click.option(
    "--service",
    "service_files",
    multiple=True,
    type=click.Path(exists=True),
    help="Service manifest that may select the pod (repeatable)",
)
@click.option(
    "--match-label", multiple=True, help="Only consider pods with key=value"
)
@click.option("--exclude-label", multiple=True, help="Skip pods with key=value")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="json")
def preview(pod_file, service_files, match_label, exclude_label, output):
    """Show the registrations a pod manifest would produce"""
    match_labels = parse_label_options(match_label, "--match-label")
    exclude_labels = parse_label_options(exclude_label, "--exclude-label")

    pod = Pod.from_dict(load_manifest(pod_file) or {})
    services = [Service.from_dict(load_manifest(f) or {}) for f in service_files]

    if not pod.is_running_and_ready():
        click.echo(
            f"Note: pod {pod.key} is not running and ready, "
            f"it would not be registered yet",
            err=True,
        )

    extractor = ExtensionExtractor(
        match_labels=match_labels, match_labels_exclude=exclude_labels
    )
    descriptors = extractor.extract(pod, services)

    click.echo(render([d.to_dict() for d in descriptors], output))


if __name__ == "__main__":
    cli()
