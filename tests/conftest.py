"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from models import Container, ContainerPort, ExtensionDescriptor, Pod, Service
from reconciler import ReconcileResult

POD_ANNOTATION = '{"extensions":[{"port":8080,"protocol":"http"}]}'
SERVICE_ANNOTATION = '{"extensions":[{"port":8085,"protocol":"http"}]}'


def make_pod(
    name="extension-pod",
    namespace="steadybit-agent",
    annotations=None,
    labels=None,
    pod_ip="192.168.1.1",
    phase="Running",
    ready=True,
    containers=None,
):
    """Build a pod like the ones the watch source delivers."""
    if containers is None:
        containers = [
            Container(
                name="extension",
                ports=[ContainerPort(container_port=8080)],
                liveness_probe_port=8081,
                readiness_probe_port=8082,
            )
        ]
    return Pod(
        name=name,
        namespace=namespace,
        labels={"app": "extension"} if labels is None else labels,
        annotations=(
            {"steadybit.com/extension-auto-registration": POD_ANNOTATION}
            if annotations is None
            else annotations
        ),
        phase=phase,
        ready=ready,
        pod_ip=pod_ip,
        containers=containers,
    )


def make_service(
    name="extension-service",
    namespace="steadybit-agent",
    annotations=None,
    selector=None,
    ports=None,
    load_balancer_ips=None,
):
    return Service(
        name=name,
        namespace=namespace,
        annotations=(
            {"steadybit.com/extension-auto-registration": SERVICE_ANNOTATION}
            if annotations is None
            else annotations
        ),
        selector={"app": "extension"} if selector is None else selector,
        ports=[8085] if ports is None else ports,
        load_balancer_ips=(
            ["555.555.555.555"] if load_balancer_ips is None else load_balancer_ips
        ),
    )


def pod_manifest(
    name="extension-pod",
    namespace="steadybit-agent",
    annotations=None,
    resource_version="1",
    ready=True,
):
    """Kubernetes API representation of the sample pod."""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": resource_version,
            "labels": {"app": "extension"},
            "annotations": (
                {"steadybit.com/extension-auto-registration": POD_ANNOTATION}
                if annotations is None
                else annotations
            ),
        },
        "spec": {
            "containers": [
                {
                    "name": "extension",
                    "ports": [{"containerPort": 8080, "name": "http"}],
                    "livenessProbe": {"httpGet": {"path": "/health", "port": 8081}},
                    "readinessProbe": {"httpGet": {"path": "/ready", "port": 8082}},
                }
            ]
        },
        "status": {
            "phase": "Running",
            "podIP": "192.168.1.1",
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
        },
    }


def service_manifest(name="extension-service", namespace="steadybit-agent"):
    """Kubernetes API representation of the sample service."""
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": "1",
            "annotations": {
                "steadybit.com/extension-auto-registration": SERVICE_ANNOTATION
            },
        },
        "spec": {"selector": {"app": "extension"}, "ports": [{"port": 8085}]},
        "status": {"loadBalancer": {"ingress": [{"ip": "555.555.555.555"}]}},
    }


@pytest.fixture
def sample_pod():
    """Running, ready pod annotated with one extension on port 8080."""
    return make_pod()


@pytest.fixture
def sample_service():
    """Annotated service on port 8085 selecting the sample pod."""
    return make_service()


@pytest.fixture
def sample_descriptor():
    """Descriptor the sample pod yields."""
    return ExtensionDescriptor(
        url="http://192.168.1.1:8080",
        restricted_ports={8080: "ContainerPort", 8081: "LivenessProbe", 8082: "ReadinessProbe"},
        restricted_ips=["192.168.1.1"],
    )


@pytest.fixture
def mock_registrar():
    """Registrar client with an empty registry."""
    registrar = MagicMock()
    registrar.list_extensions = AsyncMock(return_value=[])
    registrar.add_extension = AsyncMock()
    registrar.delete_extension = AsyncMock()
    return registrar


@pytest.fixture
def successful_sync():
    """Sync function that always succeeds."""
    return AsyncMock(return_value=ReconcileResult(success=True))
