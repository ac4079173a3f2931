import json
from datetime import datetime, timezone

import pytest

from cray.cri import (
    CRIError,
    CRIMetadataSource,
    ContainerMounts,
    Mount,
    MountPropagation,
    NamespaceMode,
    decode_container_mounts,
    decode_container_status,
    decode_pod_sandbox_network,
    mount_options,
    mounts_from_proto,
    namespace_mode_label,
    normalize_cni_result,
    port_mappings_from_proto,
    runtime_spec_network_path,
)


def _sandbox_info():
    return {
        "config": {
            "hostname": "pod-a",
            "dns_config": {
                "servers": ["10.96.0.10"],
                "searches": ["svc.cluster.local"],
                "options": ["ndots:5"],
            },
            "port_mappings": [
                {"container_port": 8080, "host_port": 30080, "host_ip": "0.0.0.0"}
            ],
            "linux": {
                "security_context": {"namespace_options": {"network": 0}},
            },
        },
        "sandboxMetadata": {"NetNSPath": "/var/run/netns/test"},
        "cniResult": {
            "Interfaces": {
                "eth0": {
                    "Mac": "00:00:5e:00:53:01",
                    "Sandbox": "/var/run/netns/test",
                    "IPConfigs": [{"IP": "10.244.0.12", "Gateway": "10.244.0.1"}],
                }
            },
            "Routes": [{"dst": "0.0.0.0/0", "gw": "10.244.0.1"}],
            "DNS": [
                {
                    "nameservers": ["10.96.0.10"],
                    "search": ["svc.cluster.local"],
                    "options": ["ndots:5"],
                    "domain": "cluster.local",
                }
            ],
        },
        "runtimeType": "io.containerd.runc.v2",
        "runtimeSpec": {
            "linux": {"namespaces": [{"type": "network", "path": "/var/run/netns/test"}]}
        },
    }


def _sandbox_response(info):
    return {
        "status": {
            "id": "sandbox-1",
            "state": "SANDBOX_READY",
            "runtime_handler": "runc",
            "network": {"ip": "10.244.0.12", "additional_ips": [{"ip": "fd00::12"}]},
            "linux": {"namespaces": {"options": {"network": "POD"}}},
        },
        "info": {"info": json.dumps(info)},
    }


def _nanos(moment):
    return int(moment.timestamp()) * 10**9


class _FakeTransport:
    def __init__(self, container=None, sandbox=None, error=None):
        self.container = container
        self.sandbox = sandbox
        self.error = error
        self.calls = []

    def container_status(self, socket_path, container_id):
        self.calls.append((socket_path, container_id))
        if self.error:
            raise self.error
        return self.container

    def pod_sandbox_status(self, socket_path, sandbox_id):
        self.calls.append((socket_path, sandbox_id))
        if self.error:
            raise self.error
        return self.sandbox


def test_mount_options():
    mount = Mount(
        readonly=True,
        recursive_read_only=True,
        selinux_relabel=True,
        propagation=MountPropagation.PROPAGATION_BIDIRECTIONAL,
        image="registry.example/app:latest",
    )
    assert mount_options(mount) == ["ro", "rro", "z", "rshared", "image=registry.example/app:latest"]


def test_mount_options_defaults_and_none():
    assert mount_options(Mount()) == ["rw", "rprivate"]
    assert mount_options(Mount(propagation=MountPropagation.PROPAGATION_HOST_TO_CONTAINER)) == [
        "rw",
        "rslave",
    ]
    assert mount_options(None) == []


def test_decode_pod_sandbox_network():
    got = decode_pod_sandbox_network(_sandbox_response(_sandbox_info()))
    assert got.sandbox_id == "sandbox-1"
    assert got.sandbox_state == "SANDBOX_READY"
    assert got.primary_ip == "10.244.0.12"
    assert got.additional_ips == ["fd00::12"]
    assert got.namespace_mode == "POD"
    assert got.host_network is False
    assert got.hostname == "pod-a"
    assert got.netns_path == "/var/run/netns/test"
    assert got.runtime_type == "io.containerd.runc.v2"
    assert got.dns is not None and got.dns.servers == ["10.96.0.10"]
    assert len(got.port_mappings) == 1
    assert got.port_mappings[0].protocol == "tcp"
    assert got.port_mappings[0].host_port == 30080
    assert got.cni is not None
    assert len(got.cni.interfaces) == 1 and len(got.cni.routes) == 1
    assert got.cni.interfaces[0].addresses[0].cidr == "10.244.0.12"
    assert got.cni.interfaces[0].addresses[0].family == "ipv4"
    assert got.cni.dns is not None and got.cni.dns.domain == "cluster.local"
    assert got.namespace_source == "cri-info-metadata"
    assert got.warnings == []


def test_decode_pod_sandbox_network_warns_on_malformed_info():
    got = decode_pod_sandbox_network({"status": {"id": "sandbox-1"}, "info": {"info": "{"}})
    assert got.sandbox_id == "sandbox-1"
    assert len(got.warnings) == 1
    assert got.warnings[0].startswith("decode cri sandbox info:")


def test_decode_pod_sandbox_network_none_response():
    got = decode_pod_sandbox_network(None)
    assert got.warnings == ["pod sandbox status response is nil"]


def test_decode_pod_sandbox_network_spec_mismatch_and_host_network():
    info = {
        "config": {
            "linux": {"security_context": {"namespace_options": {"network": 2}}},
        },
        "sandboxMetadata": {"NetNSPath": "/var/run/netns/a", "IP": "10.0.0.5"},
        "runtimeSpec": {"linux": {"namespaces": [{"type": "network", "path": "/var/run/netns/b"}]}},
    }
    got = decode_pod_sandbox_network({"info": {"info": json.dumps(info)}})
    assert got.host_network is True
    assert got.namespace_mode == "NODE"
    assert got.primary_ip == "10.0.0.5"
    assert got.netns_path == "/var/run/netns/a"
    assert got.warnings == ["netns path mismatch: metadata=/var/run/netns/a spec=/var/run/netns/b"]


def test_decode_container_status():
    info = {
        "config": {
            "envs": [
                {"key": "KUBERNETES_SERVICE_HOST", "value": "10.96.0.1"},
                {"key": "HOME", "value": "/root"},
            ],
            "linux": {"security_context": {"namespace_options": {"pid": 0}}},
        }
    }
    started = datetime(2026, 3, 13, 10, 0, 0, tzinfo=timezone.utc)
    finished = datetime(2026, 3, 13, 10, 5, 0, tzinfo=timezone.utc)
    response = {
        "status": {
            "metadata": {"attempt": 3},
            "started_at": _nanos(started),
            "finished_at": _nanos(finished),
            "exit_code": 137,
            "reason": "OOMKilled",
        },
        "info": {"info": json.dumps(info)},
    }
    got = decode_container_status(response)
    assert got.restart_count == 3
    assert got.exit_code == 137
    assert got.reason == "OOMKilled"
    assert got.started_at == started
    assert got.finished_at == finished
    assert got.shared_pid is True
    assert got.pid_mode == "POD"
    assert len(got.envs) == 2
    assert got.envs[0].key == "KUBERNETES_SERVICE_HOST"
    assert got.envs[1].value == "/root"


def test_decode_container_status_without_finish_has_no_exit_code():
    got = decode_container_status({"status": {"started_at": 0, "exit_code": 1}})
    assert got.exit_code is None
    assert got.started_at is None
    assert got.restart_count is None


def test_decode_container_status_ignores_bad_info():
    got = decode_container_status({"status": {"reason": "Error"}, "info": {"info": "not json"}})
    assert got.reason == "Error"
    assert got.envs == []


def test_decode_container_mounts():
    info = {
        "config": {
            "mounts": [
                {
                    "container_path": "/data",
                    "host_path": "/host/data",
                    "readonly": True,
                    "propagation": 1,
                }
            ]
        }
    }
    response = {
        "status": {"mounts": [{"container_path": "/data", "host_path": "/host/data"}]},
        "info": {"info": json.dumps(info)},
    }
    got = decode_container_mounts(response)
    assert got == ContainerMounts(
        config_mounts=[
            Mount(
                container_path="/data",
                host_path="/host/data",
                readonly=True,
                propagation=MountPropagation.PROPAGATION_HOST_TO_CONTAINER,
            )
        ],
        status_mounts=[Mount(container_path="/data", host_path="/host/data")],
    )


def test_decode_container_mounts_bad_info_raises():
    with pytest.raises(CRIError, match="decode cri info"):
        decode_container_mounts({"info": {"info": "{"}})


def test_mounts_from_proto_skips_none_and_reads_image():
    mounts = mounts_from_proto(
        [None, {"container_path": "/img", "image": {"image": "example/app:v1"}}]
    )
    assert len(mounts) == 1
    assert mounts[0].image == "example/app:v1"
    assert mount_options(mounts[0]) == ["rw", "rprivate", "image=example/app:v1"]


def test_port_mappings_from_proto_protocols():
    mappings = port_mappings_from_proto(
        [{"protocol": 1, "container_port": 53, "host_port": 5353}, None, {"protocol": "SCTP"}]
    )
    assert [m.protocol for m in mappings] == ["udp", "sctp"]
    assert mappings[0].container_port == 53
    assert mappings[0].host_port == 5353


def test_normalize_cni_result_sorts_and_deduplicates():
    payload = {
        "Interfaces": {
            "net1": {"IPConfigs": [{"IP": "fd00::1"}]},
            "eth0": {"IPConfigs": [None, {"IP": "10.0.0.2/24"}]},
            "skip": None,
        },
        "Routes": [{"dst": "10.0.0.0/8", "gw": "10.0.0.1"}, {"dst": "0.0.0.0/0"}],
        "DNS": [
            {"nameservers": ["1.1.1.1", "8.8.8.8"], "search": ["a"]},
            {"nameservers": ["1.1.1.1"], "domain": "example.local", "search": ["a", "b"]},
        ],
    }
    info = normalize_cni_result(payload)
    assert [iface.name for iface in info.interfaces] == ["eth0", "net1"]
    assert info.interfaces[1].addresses[0].family == "ipv6"
    assert info.interfaces[0].addresses[0].family == "ipv6"
    assert [route.destination for route in info.routes] == ["0.0.0.0/0", "10.0.0.0/8"]
    assert info.routes[0].gateway == ""
    assert info.dns.servers == ["1.1.1.1", "8.8.8.8"]
    assert info.dns.searches == ["a", "b"]
    assert info.dns.domain == "example.local"


def test_normalize_cni_result_empty_is_none():
    assert normalize_cni_result({}) is None
    assert normalize_cni_result(None) is None


@pytest.mark.parametrize(
    "mode, label",
    [
        (NamespaceMode.POD, "POD"),
        (1, "CONTAINER"),
        ("NODE", "NODE"),
        (3, "TARGET"),
        (9, ""),
        ("BOGUS", ""),
        (None, ""),
    ],
)
def test_namespace_mode_label(mode, label):
    assert namespace_mode_label(mode) == label


def test_runtime_spec_network_path():
    spec = {
        "linux": {
            "namespaces": [
                {"type": "pid", "path": ""},
                {"type": "network", "path": "/var/run/netns/pod"},
            ]
        }
    }
    assert runtime_spec_network_path(spec) == "/var/run/netns/pod"
    assert runtime_spec_network_path({"linux": {"namespaces": []}}) == ""
    assert runtime_spec_network_path(None) == ""


def test_source_inspects_through_transport():
    transport = _FakeTransport(
        container={"status": {"reason": "Completed", "mounts": [{"container_path": "/x"}]}},
        sandbox=_sandbox_response(_sandbox_info()),
    )
    source = CRIMetadataSource("/run/containerd/containerd.sock", transport)
    assert source.inspect_container_status("c1").reason == "Completed"
    assert source.inspect_container_mounts("c1").status_mounts[0].container_path == "/x"
    assert source.inspect_pod_sandbox_network("sandbox-1").sandbox_id == "sandbox-1"
    assert transport.calls[0] == ("/run/containerd/containerd.sock", "c1")


def test_source_not_configured():
    with pytest.raises(CRIError, match="cri client not configured"):
        CRIMetadataSource("", _FakeTransport()).inspect_container_status("c1")
    with pytest.raises(CRIError, match="cri client not configured"):
        CRIMetadataSource("/sock").inspect_container_mounts("c1")


def test_source_requires_ids():
    source = CRIMetadataSource("/sock", _FakeTransport())
    with pytest.raises(CRIError, match="container id is required"):
        source.inspect_container_mounts("")
    with pytest.raises(CRIError, match="sandbox id is required"):
        source.inspect_pod_sandbox_network("")


def test_source_wraps_transport_errors():
    source = CRIMetadataSource("/sock", _FakeTransport(error=ConnectionError("refused")))
    with pytest.raises(CRIError, match="cri container status: refused"):
        source.inspect_container_status("c1")
    with pytest.raises(CRIError, match="cri pod sandbox status: refused"):
        source.inspect_pod_sandbox_network("s1")