"""Unit tests for extractor.py - Descriptor derivation from workloads."""

import logging

from extractor import (
    DEFAULT_HEALTH_PORT,
    ExtensionAnnotation,
    ExtensionExtractor,
    get_extension_annotations,
    parse_annotation,
    pod_ports,
)
from models import Container, ContainerPort, ExtensionDescriptor

from conftest import make_pod, make_service


class TestParseAnnotation:
    """Tests for annotation parsing."""

    def test_single_extension(self):
        extensions = parse_annotation('{"extensions":[{"port":8080,"protocol":"http"}]}')
        assert extensions == [ExtensionAnnotation(protocol="http", port=8080)]

    def test_path_is_kept(self):
        extensions = parse_annotation(
            '{"extensions":[{"port":8080,"protocol":"https","path":"/ext"}]}'
        )
        assert extensions[0].build_url("10.0.0.1") == "https://10.0.0.1:8080/ext"

    def test_null_path_and_protocol(self):
        extensions = parse_annotation(
            '{"extensions":[{"port":8080,"protocol":"http","path":null}]}'
        )
        assert extensions[0].build_url("10.0.0.1") == "http://10.0.0.1:8080"
        (no_protocol,) = parse_annotation('{"extensions":[{"port":1,"protocol":null}]}')
        assert no_protocol.build_url("svc") == "://svc:1"

    def test_missing_port_omits_it_from_url(self):
        extensions = parse_annotation('{"extensions":[{"protocol":"http"}]}')
        assert extensions[0].build_url("svc") == "http://svc"

    def test_malformed_json(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert parse_annotation("{not json") == []
        assert "Failed to parse extension annotation" in caplog.text

    def test_wrong_shape(self):
        assert parse_annotation('{"extensions":[{"port":"eighty"}]}') == []

    def test_empty_object(self):
        assert parse_annotation("{}") == []


class TestGetExtensionAnnotations:
    """Tests for annotation key lookup."""

    def test_current_key(self):
        annotations = {
            "steadybit.com/extension-auto-registration": '{"extensions":[{"port":1,"protocol":"http"}]}'
        }
        assert len(get_extension_annotations(annotations)) == 1

    def test_legacy_key(self):
        annotations = {
            "steadybit.com/extension-auto-discovery": '{"extensions":[{"port":2,"protocol":"http"}]}'
        }
        assert get_extension_annotations(annotations)[0].port == 2

    def test_current_key_wins(self):
        annotations = {
            "steadybit.com/extension-auto-registration": '{"extensions":[{"port":1,"protocol":"http"}]}',
            "steadybit.com/extension-auto-discovery": '{"extensions":[{"port":2,"protocol":"http"}]}',
        }
        assert get_extension_annotations(annotations)[0].port == 1

    def test_no_annotations(self):
        assert get_extension_annotations(None) == []
        assert get_extension_annotations({"other": "x"}) == []


class TestPodPorts:
    """Tests for restricted port collection."""

    def test_labels(self, sample_pod):
        assert pod_ports(sample_pod) == {
            8080: "ContainerPort",
            8081: "LivenessProbe",
            8082: "ReadinessProbe",
        }

    def test_default_health_port_without_probes(self):
        pod = make_pod(containers=[Container(ports=[ContainerPort(container_port=8080)])])
        assert pod_ports(pod) == {
            8080: "ContainerPort",
            DEFAULT_HEALTH_PORT: "Defaulted HealthPort",
        }

    def test_probe_on_container_port(self):
        pod = make_pod(
            containers=[
                Container(
                    ports=[ContainerPort(container_port=8080, name="http")],
                    readiness_probe_port="http",
                )
            ]
        )
        assert pod_ports(pod) == {8080: "ReadinessProbe"}

    def test_unresolvable_named_probe_is_ignored(self):
        pod = make_pod(
            containers=[
                Container(
                    ports=[ContainerPort(container_port=8080)],
                    liveness_probe_port="missing",
                )
            ]
        )
        assert pod_ports(pod) == {
            8080: "ContainerPort",
            DEFAULT_HEALTH_PORT: "Defaulted HealthPort",
        }

    def test_ports_across_containers(self):
        pod = make_pod(
            containers=[
                Container(ports=[ContainerPort(container_port=8080)], liveness_probe_port=8081),
                Container(ports=[ContainerPort(container_port=9090)]),
            ]
        )
        assert pod_ports(pod) == {
            8080: "ContainerPort",
            8081: "LivenessProbe",
            9090: "ContainerPort",
        }


class TestExtractFromPod:
    """Tests for pod-annotated extensions."""

    def test_pod_annotation(self, sample_pod, sample_descriptor):
        descriptors = ExtensionExtractor().extract(sample_pod, [])
        assert descriptors == [sample_descriptor]
        assert descriptors[0].restricted_ports == sample_descriptor.restricted_ports
        assert descriptors[0].restricted_ips == ["192.168.1.1"]

    def test_pod_annotation_wins_over_service(self, sample_pod, sample_service, sample_descriptor):
        descriptors = ExtensionExtractor().extract(sample_pod, [sample_service])
        assert descriptors == [sample_descriptor]

    def test_multiple_extensions(self):
        pod = make_pod(
            annotations={
                "steadybit.com/extension-auto-registration": (
                    '{"extensions":[{"port":8080,"protocol":"http"},'
                    '{"port":8443,"protocol":"https"}]}'
                )
            }
        )
        urls = [d.url for d in ExtensionExtractor().extract(pod)]
        assert urls == ["http://192.168.1.1:8080", "https://192.168.1.1:8443"]

    def test_no_ip(self, caplog):
        pod = make_pod(pod_ip="")
        with caplog.at_level(logging.WARNING):
            assert ExtensionExtractor().extract(pod) == []
        assert "no IP" in caplog.text

    def test_malformed_annotation(self):
        pod = make_pod(annotations={"steadybit.com/extension-auto-registration": "oops"})
        assert ExtensionExtractor().extract(pod) == []

    def test_unannotated_pod_without_services(self):
        assert ExtensionExtractor().extract(make_pod(annotations={})) == []

    def test_deterministic(self, sample_pod, sample_service):
        extractor = ExtensionExtractor()
        first = extractor.extract(sample_pod, [sample_service])
        second = extractor.extract(sample_pod, [sample_service])
        assert [d.to_dict() for d in first] == [d.to_dict() for d in second]


class TestExtractFromService:
    """Tests for service-annotated extensions."""

    def test_service_annotation(self, sample_service):
        pod = make_pod(annotations={})
        descriptors = ExtensionExtractor().extract(pod, [sample_service])
        assert descriptors == [
            ExtensionDescriptor(
                url="http://extension-service.steadybit-agent.svc.cluster.local:8085",
                restricted_ports={
                    8080: "ContainerPort",
                    8081: "LivenessProbe",
                    8082: "ReadinessProbe",
                    8085: "ServicePort",
                },
                restricted_ips=["555.555.555.555", "192.168.1.1"],
            )
        ]
        assert descriptors[0].restricted_ips == ["555.555.555.555", "192.168.1.1"]

    def test_pod_port_overrides_service_port_label(self):
        pod = make_pod(annotations={})
        service = make_service(ports=[8080])
        descriptors = ExtensionExtractor().extract(pod, [service])
        assert descriptors[0].restricted_ports[8080] == "ContainerPort"

    def test_service_without_ip_on_pod(self, sample_service):
        pod = make_pod(annotations={}, pod_ip="")
        descriptors = ExtensionExtractor().extract(pod, [sample_service])
        assert descriptors[0].restricted_ips == ["555.555.555.555"]

    def test_unannotated_service(self):
        pod = make_pod(annotations={})
        service = make_service(annotations={})
        assert ExtensionExtractor().extract(pod, [service]) == []

    def test_service_not_selecting_pod(self):
        pod = make_pod(annotations={})
        service = make_service(selector={"app": "other"})
        assert ExtensionExtractor().extract(pod, [service]) == []

    def test_several_annotated_services_skip_pod(self, caplog):
        pod = make_pod(annotations={})
        services = [make_service(name="one"), make_service(name="two")]
        with caplog.at_level(logging.WARNING):
            assert ExtensionExtractor().extract(pod, services) == []
        assert "several annotated services" in caplog.text

    def test_one_annotated_among_several(self):
        pod = make_pod(annotations={})
        services = [make_service(name="plain", annotations={}), make_service(name="ext")]
        descriptors = ExtensionExtractor().extract(pod, services)
        assert descriptors[0].url == "http://ext.steadybit-agent.svc.cluster.local:8085"


class TestLabelSelectors:
    """Tests for matchLabels and matchLabelsExclude."""

    def test_match_labels(self, sample_pod):
        extractor = ExtensionExtractor(match_labels={"app": "extension"})
        assert len(extractor.extract(sample_pod)) == 1

    def test_match_labels_mismatch(self, sample_pod):
        extractor = ExtensionExtractor(match_labels={"app": "other"})
        assert extractor.extract(sample_pod) == []

    def test_match_labels_requires_all(self, sample_pod):
        extractor = ExtensionExtractor(match_labels={"app": "extension", "tier": "x"})
        assert extractor.extract(sample_pod) == []

    def test_exclude_labels(self, sample_pod):
        extractor = ExtensionExtractor(match_labels_exclude={"app": "extension"})
        assert extractor.extract(sample_pod) == []

    def test_exclude_labels_partial_match_keeps_pod(self, sample_pod):
        extractor = ExtensionExtractor(
            match_labels_exclude={"app": "extension", "skip": "true"}
        )
        assert len(extractor.extract(sample_pod)) == 1

    def test_selectors_apply_to_service_path(self, sample_service):
        pod = make_pod(annotations={})
        extractor = ExtensionExtractor(match_labels_exclude={"app": "extension"})
        assert extractor.extract(pod, [sample_service]) == []
