"""
Extension Extractor - Derives extension descriptors from workloads.

A pod advertises extensions either through an annotation on itself or
through an annotation on the single service that selects it. The extractor
turns that annotation into descriptors the agent can register, scoping each
one to the ports and IPs of the workload.
"""

import logging
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError

from models import ExtensionDescriptor, Pod, Service, labels_match

logger = logging.getLogger(__name__)

# Current annotation first, legacy alias second
ANNOTATION_KEYS = (
    "steadybit.com/extension-auto-registration",
    "steadybit.com/extension-auto-discovery",
)

DEFAULT_HEALTH_PORT = 8081

LABEL_CONTAINER_PORT = "ContainerPort"
LABEL_LIVENESS_PROBE = "LivenessProbe"
LABEL_READINESS_PROBE = "ReadinessProbe"
LABEL_DEFAULTED_HEALTH_PORT = "Defaulted HealthPort"
LABEL_SERVICE_PORT = "ServicePort"


class ExtensionAnnotation(BaseModel):
    """One extension endpoint announced by an annotation."""

    # null is accepted and treated as empty
    protocol: Optional[str] = None
    port: Optional[int] = None
    path: Optional[str] = None

    def build_url(self, host: str) -> str:
        url = f"{self.protocol or ''}://{host}"
        if self.port is not None and self.port > 0:
            url += f":{self.port}"
        return url + (self.path or "")


class ExtensionAnnotations(BaseModel):
    """Annotation payload: ``{"extensions": [...]}``."""

    extensions: List[ExtensionAnnotation] = Field(default_factory=list)


def parse_annotation(value: str) -> List[ExtensionAnnotation]:
    """
    Parse an annotation value.

    Malformed payloads are logged and yield no extensions.
    """
    try:
        return ExtensionAnnotations.model_validate_json(value).extensions
    except ValidationError as e:
        logger.warning(f"Failed to parse extension annotation {value!r}, ignoring: {e}")
        return []


def get_extension_annotations(
    annotations: Optional[Dict[str, str]],
) -> List[ExtensionAnnotation]:
    """Return the extensions announced by the first recognized annotation key."""
    if not annotations:
        return []
    for key in ANNOTATION_KEYS:
        if key in annotations:
            return parse_annotation(annotations[key])
    return []


def pod_ports(pod: Pod) -> Dict[int, str]:
    """
    Collect the ports a pod exposes, labeled by where they were declared.

    Later declarations win on the same port number. When no HTTP probe port
    is found, the well-known health port is added.
    """
    ports: Dict[int, str] = {}
    for container in pod.containers:
        for declared in container.ports:
            ports[declared.container_port] = LABEL_CONTAINER_PORT
        liveness = container.resolve_port(container.liveness_probe_port)
        if liveness is not None:
            ports[liveness] = LABEL_LIVENESS_PROBE
        readiness = container.resolve_port(container.readiness_probe_port)
        if readiness is not None:
            ports[readiness] = LABEL_READINESS_PROBE

    labels = set(ports.values())
    if LABEL_LIVENESS_PROBE not in labels and LABEL_READINESS_PROBE not in labels:
        ports[DEFAULT_HEALTH_PORT] = LABEL_DEFAULTED_HEALTH_PORT
    return ports


class ExtensionExtractor:
    """
    Turns a pod and the services selecting it into extension descriptors.

    Never raises for workload data: every problem degrades to an empty
    result for that pod.
    """

    def __init__(
        self,
        match_labels: Optional[Dict[str, str]] = None,
        match_labels_exclude: Optional[Dict[str, str]] = None,
    ):
        self.match_labels = match_labels or {}
        self.match_labels_exclude = match_labels_exclude or {}

    def is_candidate(self, pod: Pod) -> bool:
        """Apply the include/exclude label selectors."""
        if self.match_labels and not labels_match(pod.labels, self.match_labels):
            logger.debug(f"Pod {pod.key} does not match matchLabels, skipping")
            return False
        if self.match_labels_exclude and labels_match(
            pod.labels, self.match_labels_exclude
        ):
            logger.debug(f"Pod {pod.key} matches matchLabelsExclude, skipping")
            return False
        return True

    def extract(
        self, pod: Pod, services: Iterable[Service] = ()
    ) -> List[ExtensionDescriptor]:
        """
        Derive the descriptors a pod should be registered with.

        Args:
            pod: The workload
            services: Services in the pod's namespace that may select it

        Returns:
            Descriptors for the pod, possibly empty
        """
        if not self.is_candidate(pod):
            return []

        extensions = get_extension_annotations(pod.annotations)
        if extensions:
            return self._from_pod(pod, extensions)
        return self._from_services(pod, services)

    def _from_pod(
        self, pod: Pod, extensions: List[ExtensionAnnotation]
    ) -> List[ExtensionDescriptor]:
        if not pod.pod_ip:
            logger.warning(f"Pod {pod.key} has extension annotations but no IP, ignoring")
            return []

        return [
            ExtensionDescriptor(
                url=extension.build_url(pod.pod_ip),
                restricted_ports=pod_ports(pod),
                restricted_ips=[pod.pod_ip],
            )
            for extension in extensions
        ]

    def _from_services(
        self, pod: Pod, services: Iterable[Service]
    ) -> List[ExtensionDescriptor]:
        annotated = []
        for service in services:
            if not service.selects(pod):
                continue
            logger.debug(f"Found service {service.name} for pod {pod.key}")
            extensions = get_extension_annotations(service.annotations)
            if extensions:
                annotated.append((service, extensions))

        if not annotated:
            return []
        if len(annotated) > 1:
            names = ", ".join(service.name for service, _ in annotated)
            logger.warning(
                f"Pod {pod.key} is selected by several annotated services ({names}), "
                f"skipping"
            )
            return []

        service, extensions = annotated[0]
        host = f"{service.name}.{service.namespace}.svc.cluster.local"
        descriptors = []
        for extension in extensions:
            ports = {port: LABEL_SERVICE_PORT for port in service.ports}
            ports.update(pod_ports(pod))
            ips = list(service.load_balancer_ips)
            if pod.pod_ip:
                ips.append(pod.pod_ip)
            descriptors.append(
                ExtensionDescriptor(
                    url=extension.build_url(host),
                    restricted_ports=ports,
                    restricted_ips=ips,
                )
            )
        return descriptors
