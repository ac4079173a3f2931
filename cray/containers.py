"""Building container, pod and network records from runtime metadata.

OCI runtime specs are handled as mappings shaped like their JSON form
(``{"linux": {"namespaces": [...]}, "process": {"env": [...]}}``).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from . import cri
from .models import (
    CNIInterface,
    CNIInterfaceAddress,
    CNIResultInfo,
    CNIRoute,
    Container,
    ContainerDetail,
    ContainerStatus,
    DNSConfig,
    EnvVar,
    NetworkStats,
    Pod,
    PodNetworkInfo,
    PortMapping,
)

__all__ = [
    "ContainerInfo",
    "RuntimeInfo",
    "apply_cri_container_status",
    "build_container_from_info",
    "build_environment_from_spec",
    "build_namespace_map",
    "convert_cri_cni_result",
    "convert_cri_port_mappings",
    "convert_status",
    "group_pods",
    "is_kubernetes_env_key",
    "populate_pod_network",
    "shared_pid_from_spec",
    "should_attach_pod_network",
]

_KUBERNETES_ENV_PREFIXES = ("KUBERNETES_", "POD_", "SERVICE_")


@dataclass
class RuntimeInfo:
    """The runtime a container was created with, and its options."""

    name: str = ""
    options: Optional[Mapping[str, Any]] = None


@dataclass
class ContainerInfo:
    """Container metadata as recorded by the runtime."""

    id: str = ""
    image: str = ""
    created_at: Optional[datetime] = None
    labels: dict[str, str] = field(default_factory=dict)
    snapshot_key: str = ""
    snapshotter: str = ""
    sandbox_id: str = ""
    runtime: RuntimeInfo = field(default_factory=RuntimeInfo)


class PodSandboxSource(Protocol):
    """Anything able to report the network of a pod sandbox."""

    def inspect_pod_sandbox_network(self, sandbox_id: str) -> Optional[cri.PodSandboxNetwork]:
        ...


def convert_status(status: str) -> ContainerStatus:
    """Map a runtime task status name onto a container status."""
    try:
        return ContainerStatus(status)
    except ValueError:
        return ContainerStatus.UNKNOWN


def build_container_from_info(info: ContainerInfo) -> Container:
    """Build a container record from runtime metadata and its labels."""
    labels = dict(info.labels or {})
    name = labels.get("io.kubernetes.container.name")
    if name is None:
        name = labels.get("name")
    if name is None:
        name = info.id[:12]
    return Container(
        id=info.id,
        name=name,
        image=info.image,
        created_at=info.created_at,
        labels=labels,
        pod_name=labels.get("io.kubernetes.pod.name", ""),
        pod_namespace=labels.get("io.kubernetes.pod.namespace", ""),
        pod_uid=labels.get("io.kubernetes.pod.uid", ""),
    )


def _linux(spec: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    if not isinstance(spec, Mapping):
        return None
    linux = spec.get("linux")
    return linux if isinstance(linux, Mapping) else None


def _namespaces(linux: Mapping[str, Any]) -> Iterable[Mapping[str, Any]]:
    return (ns for ns in linux.get("namespaces") or () if isinstance(ns, Mapping))


def build_namespace_map(spec: Optional[Mapping[str, Any]]) -> dict[str, str]:
    """Return namespace type to path for the namespaces of a spec."""
    linux = _linux(spec)
    if linux is None:
        return {}
    return {str(ns.get("type") or ""): ns.get("path") or "" for ns in _namespaces(linux)}


def is_kubernetes_env_key(key: str) -> bool:
    """Tell whether an environment variable was injected by Kubernetes."""
    return key.startswith(_KUBERNETES_ENV_PREFIXES)


def build_environment_from_spec(spec: Optional[Mapping[str, Any]]) -> list[EnvVar]:
    """Return the process environment declared in a spec."""
    if not isinstance(spec, Mapping):
        return []
    process = spec.get("process")
    if not isinstance(process, Mapping):
        return []
    envs = []
    for entry in process.get("env") or ():
        key, sep, value = str(entry).partition("=")
        if not sep or not key:
            continue
        envs.append(EnvVar(key=key, value=value, is_kubernetes=is_kubernetes_env_key(key)))
    return envs


def shared_pid_from_spec(spec: Optional[Mapping[str, Any]]) -> Optional[bool]:
    """Tell whether the PID namespace is joined from elsewhere; None if undeclared."""
    linux = _linux(spec)
    if linux is None:
        return None
    for ns in _namespaces(linux):
        if ns.get("type") == "pid":
            return bool(ns.get("path"))
    return None


def apply_cri_container_status(
    detail: Optional[ContainerDetail], status_info: Optional[cri.ContainerStatusInfo]
) -> None:
    """Fill fields of ``detail`` that are still unset from a CRI status."""
    if detail is None or status_info is None:
        return
    if detail.started_at is None and status_info.started_at is not None:
        detail.started_at = status_info.started_at
    if detail.exited_at is None and status_info.finished_at is not None:
        detail.exited_at = status_info.finished_at
    if detail.exit_code is None and status_info.exit_code is not None:
        detail.exit_code = status_info.exit_code
    if not detail.exit_reason:
        detail.exit_reason = status_info.reason
    if detail.restart_count is None:
        detail.restart_count = status_info.restart_count
    if detail.shared_pid is None:
        detail.shared_pid = status_info.shared_pid
    if not detail.environment and status_info.envs:
        detail.environment = [
            EnvVar(key=env.key, value=env.value, is_kubernetes=is_kubernetes_env_key(env.key))
            for env in status_info.envs
        ]


def convert_cri_port_mappings(mappings: Optional[Iterable[Any]]) -> list[PortMapping]:
    """Copy CRI port mappings, skipping empty entries."""
    return [
        PortMapping(
            host_ip=mapping.host_ip,
            host_port=mapping.host_port,
            container_port=mapping.container_port,
            protocol=mapping.protocol,
        )
        for mapping in mappings or ()
        if mapping is not None
    ]


def _copy_dns(dns: DNSConfig) -> DNSConfig:
    return DNSConfig(
        domain=dns.domain,
        servers=list(dns.servers),
        searches=list(dns.searches),
        options=list(dns.options),
    )


def convert_cri_cni_result(result: Optional[CNIResultInfo]) -> Optional[CNIResultInfo]:
    """Copy a CNI result; None when it carries nothing of use."""
    if result is None:
        return None
    converted = CNIResultInfo()
    for iface in result.interfaces:
        if iface is None:
            continue
        converted.interfaces.append(
            CNIInterface(
                name=iface.name,
                mac=iface.mac,
                sandbox=iface.sandbox,
                pci_id=iface.pci_id,
                socket_path=iface.socket_path,
                addresses=[
                    CNIInterfaceAddress(cidr=addr.cidr, gateway=addr.gateway, family=addr.family)
                    for addr in iface.addresses
                    if addr is not None
                ],
            )
        )
    converted.routes = [
        CNIRoute(destination=route.destination, gateway=route.gateway)
        for route in result.routes
        if route is not None
    ]
    if result.dns is not None:
        converted.dns = _copy_dns(result.dns)
    if not converted.interfaces and not converted.routes and converted.dns is None:
        return None
    return converted


def should_attach_pod_network(info: Optional[PodNetworkInfo]) -> bool:
    """Tell whether pod network info holds anything worth showing."""
    if info is None:
        return False
    return bool(
        info.sandbox_id
        or info.primary_ip
        or info.additional_ips
        or info.netns_path
        or info.port_mappings
        or info.hostname
        or info.observed_interfaces
        or info.warnings
    )


def _apply_cri_network(network: PodNetworkInfo, cri_network: cri.PodSandboxNetwork) -> None:
    network.sandbox_state = cri_network.sandbox_state
    network.primary_ip = cri_network.primary_ip
    network.additional_ips = list(cri_network.additional_ips)
    network.host_network = cri_network.host_network
    network.namespace_mode = cri_network.namespace_mode
    network.namespace_target_id = cri_network.namespace_target_id
    network.hostname = cri_network.hostname
    network.runtime_handler = cri_network.runtime_handler
    network.runtime_type = cri_network.runtime_type
    network.status_source = cri_network.status_source
    network.config_source = cri_network.config_source
    if cri_network.port_mappings:
        network.port_mappings = convert_cri_port_mappings(cri_network.port_mappings)
    if cri_network.dns is not None:
        network.dns = _copy_dns(cri_network.dns)
    if cri_network.cni is not None:
        network.cni = convert_cri_cni_result(cri_network.cni)
    if cri_network.netns_path:
        if network.netns_path and network.netns_path != cri_network.netns_path:
            network.warnings.append(
                f"netns path mismatch: spec={network.netns_path} cri={cri_network.netns_path}"
            )
        network.netns_path = cri_network.netns_path
        network.namespace_source = cri_network.namespace_source
    network.warnings.extend(cri_network.warnings)


def populate_pod_network(
    detail: Optional[ContainerDetail],
    info: ContainerInfo,
    spec: Optional[Mapping[str, Any]],
    cri_source: Optional[PodSandboxSource] = None,
    read_net_dev: Optional[Callable[[int], Sequence[NetworkStats]]] = None,
) -> None:
    """Gather pod sandbox network metadata into ``detail``.

    ``cri_source`` supplies the CRI view of the sandbox and ``read_net_dev``
    the interface counters observed for a PID; either may be absent.
    """
    if detail is None:
        return

    network = PodNetworkInfo(sandbox_id=info.sandbox_id)
    spec_path = detail.namespaces.get("network", "") if detail.namespaces else ""
    if spec_path:
        network.netns_path = spec_path
        network.namespace_source = "containerd-spec"

    def attach() -> None:
        if should_attach_pod_network(network):
            detail.pod_network = network

    if not info.sandbox_id:
        network.warnings.append("sandbox id unresolved")
        attach()
        return
    if cri_source is None:
        network.warnings.append("cri metadata client unavailable")
        attach()
        return

    try:
        cri_network = cri_source.inspect_pod_sandbox_network(info.sandbox_id)
    except Exception as err:
        network.warnings.append(f"cri pod sandbox status failed: {err}")
        attach()
        return

    if cri_network is not None:
        _apply_cri_network(network, cri_network)

    if detail.pid > 0 and read_net_dev is not None:
        try:
            network.observed_interfaces = list(read_net_dev(detail.pid))
        except Exception as err:
            network.warnings.append(f"procfs net/dev read failed: {err}")

    if not network.netns_path:
        path = cri.runtime_spec_network_path(spec)
        if path:
            network.netns_path = path
            if not network.namespace_source:
                network.namespace_source = "containerd-spec"

    detail.ip_address = network.primary_ip
    detail.port_mappings = network.port_mappings
    attach()


def group_pods(containers: Iterable[Container]) -> list[Pod]:
    """Group containers into pods by pod UID; containers without one are skipped."""
    pods: dict[str, Pod] = {}
    for container in containers:
        if not container.pod_uid:
            continue
        pod = pods.get(container.pod_uid)
        if pod is None:
            pod = Pod(
                name=container.pod_name,
                namespace=container.pod_namespace,
                uid=container.pod_uid,
            )
            pods[container.pod_uid] = pod
        pod.containers.append(container)
    return list(pods.values())