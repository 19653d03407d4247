"""
Data model for extension auto-registration.

Holds the extension descriptor exchanged with the agent, its equality
relation, and the trimmed views of Kubernetes pods and services that the
extractor reads.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass(eq=False)
class ExtensionDescriptor:
    """
    One extension registration as understood by the agent.

    Equality follows ``descriptors_equal``: only the URL and the restricted
    ports/IPs take part, so registrar-side defaulting of ``types`` or
    ``unix_socket`` never makes a registration look stale.
    """

    url: str = ""
    restricted_ports: Dict[int, str] = field(default_factory=dict)
    restricted_ips: List[str] = field(default_factory=list)
    types: List[str] = field(default_factory=list)
    # Never produced locally, but kept so registrations using it can be deleted
    unix_socket: str = ""

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExtensionDescriptor):
            return NotImplemented
        return descriptors_equal(self, other)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to the agent's JSON shape.

        Empty fields are omitted and port keys become strings.
        """
        data: Dict[str, Any] = {}
        if self.unix_socket:
            data["unixSocket"] = self.unix_socket
        if self.url:
            data["url"] = self.url
        if self.types:
            data["types"] = list(self.types)
        if self.restricted_ports:
            data["restrictedPorts"] = {
                str(port): label for port, label in sorted(self.restricted_ports.items())
            }
        if self.restricted_ips:
            data["restrictedIps"] = list(self.restricted_ips)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtensionDescriptor":
        """
        Parse a descriptor from the agent's JSON shape.

        Raises:
            ValueError: If a restricted port key is not an integer
        """
        ports = data.get("restrictedPorts") or {}
        return cls(
            url=data.get("url") or "",
            restricted_ports={int(port): label for port, label in ports.items()},
            restricted_ips=list(data.get("restrictedIps") or []),
            types=list(data.get("types") or []),
            unix_socket=data.get("unixSocket") or "",
        )

    def __str__(self) -> str:
        ports = ",".join(str(p) for p in sorted(self.restricted_ports))
        ips = ",".join(self.restricted_ips)
        return f"{self.url or self.unix_socket} (ports=[{ports}], ips=[{ips}])"


def descriptors_equal(a: ExtensionDescriptor, b: ExtensionDescriptor) -> bool:
    """
    Compare two descriptors the way the agent identifies a registration.

    URLs must match exactly. Restricted ports are compared as sets of
    (port, label) pairs and restricted IPs as sets of strings; ``None`` and
    empty are the same. ``types`` and ``unix_socket`` are ignored.
    """
    if a.url != b.url:
        return False
    if (a.restricted_ports or {}) != (b.restricted_ports or {}):
        return False
    return set(a.restricted_ips or ()) == set(b.restricted_ips or ())


def labels_match(labels: Optional[Dict[str, str]], selector: Dict[str, str]) -> bool:
    """Return True if every key/value pair of ``selector`` is present in ``labels``."""
    labels = labels or {}
    return all(
        key in labels and labels[key] == value for key, value in selector.items()
    )


# Kubernetes views


@dataclass
class ContainerPort:
    """A port declared by a container."""

    container_port: int
    name: str = ""


@dataclass
class Container:
    """The parts of a container spec that describe reachable ports."""

    name: str = ""
    ports: List[ContainerPort] = field(default_factory=list)
    liveness_probe_port: Optional[Union[int, str]] = None
    readiness_probe_port: Optional[Union[int, str]] = None

    def resolve_port(self, port: Optional[Union[int, str]]) -> Optional[int]:
        """
        Resolve an HTTP probe port to a number.

        Named ports resolve against the container's declared ports; an
        unknown name resolves to None.
        """
        if port is None:
            return None
        if isinstance(port, int):
            return port
        if port.isdigit():
            return int(port)
        for declared in self.ports:
            if declared.name == port:
                return declared.container_port
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Container":
        return cls(
            name=data.get("name", ""),
            ports=[
                ContainerPort(
                    container_port=int(p["containerPort"]), name=p.get("name", "")
                )
                for p in data.get("ports") or []
                if p.get("containerPort") is not None
            ],
            liveness_probe_port=_http_probe_port(data.get("livenessProbe")),
            readiness_probe_port=_http_probe_port(data.get("readinessProbe")),
        )


def _http_probe_port(probe: Optional[Dict[str, Any]]) -> Optional[Union[int, str]]:
    if not probe:
        return None
    http_get = probe.get("httpGet")
    if not http_get:
        return None
    return http_get.get("port")


@dataclass
class Pod:
    """Trimmed view of a Kubernetes pod."""

    name: str
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    phase: str = ""
    ready: bool = False
    pod_ip: str = ""
    containers: List[Container] = field(default_factory=list)
    resource_version: str = ""

    @property
    def key(self) -> str:
        """Workload identity: ``namespace/name``."""
        return f"{self.namespace}/{self.name}"

    def is_running_and_ready(self) -> bool:
        return self.phase == "Running" and self.ready

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pod":
        """Build a pod view from a Kubernetes API object."""
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        ready = any(
            cond.get("type") == "Ready" and cond.get("status") == "True"
            for cond in status.get("conditions") or []
        )
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            phase=status.get("phase", ""),
            ready=ready,
            pod_ip=status.get("podIP") or "",
            containers=[Container.from_dict(c) for c in spec.get("containers") or []],
            resource_version=metadata.get("resourceVersion", ""),
        )


@dataclass
class Service:
    """Trimmed view of a Kubernetes service."""

    name: str
    namespace: str
    annotations: Dict[str, str] = field(default_factory=dict)
    selector: Dict[str, str] = field(default_factory=dict)
    ports: List[int] = field(default_factory=list)
    load_balancer_ips: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def selects(self, pod: Pod) -> bool:
        """A service selects a pod when its non-empty selector matches the pod's labels."""
        if not self.selector or pod.namespace != self.namespace:
            return False
        return labels_match(pod.labels, self.selector)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Service":
        """Build a service view from a Kubernetes API object."""
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        ingress = (status.get("loadBalancer") or {}).get("ingress") or []
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            annotations=dict(metadata.get("annotations") or {}),
            selector=dict(spec.get("selector") or {}),
            ports=[int(p["port"]) for p in spec.get("ports") or [] if "port" in p],
            load_balancer_ips=[i["ip"] for i in ingress if i.get("ip")],
        )
