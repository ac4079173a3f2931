"""Reading and normalising CRI container and pod sandbox metadata.

CRI responses are handled as plain mappings shaped like the CRI messages,
with snake_case field names. Verbose responses carry a JSON document under
``info["info"]``, which is decoded here as well. Enumerations may be given
either by number or by name.
"""

from __future__ import annotations

import ipaddress
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, Optional, Protocol

__all__ = [
    "CNIInterface",
    "CNIInterfaceAddress",
    "CNIResultInfo",
    "CNIRoute",
    "CRIError",
    "CRIMetadataSource",
    "CRITransport",
    "ContainerEnv",
    "ContainerMounts",
    "ContainerStatusInfo",
    "DNSConfig",
    "Mount",
    "MountPropagation",
    "NamespaceMode",
    "PodSandboxNetwork",
    "PortMapping",
    "decode_container_mounts",
    "decode_container_status",
    "decode_pod_sandbox_network",
    "mount_options",
    "mounts_from_proto",
    "namespace_mode_label",
    "normalize_cni_result",
    "port_mappings_from_proto",
    "runtime_spec_network_path",
]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_PROTOCOL_NAMES = {0: "TCP", 1: "UDP", 2: "SCTP"}
_SANDBOX_STATE_NAMES = {0: "SANDBOX_READY", 1: "SANDBOX_NOTREADY"}


class CRIError(Exception):
    """Raised when CRI metadata cannot be fetched or decoded."""


class MountPropagation(IntEnum):
    """Mount propagation mode of a CRI mount."""

    PROPAGATION_PRIVATE = 0
    PROPAGATION_HOST_TO_CONTAINER = 1
    PROPAGATION_BIDIRECTIONAL = 2


class NamespaceMode(IntEnum):
    """Scope of a Linux namespace as declared through CRI."""

    POD = 0
    CONTAINER = 1
    NODE = 2
    TARGET = 3


@dataclass
class Mount:
    """The CRI mount fields used when merging mount sources."""

    container_path: str = ""
    host_path: str = ""
    readonly: bool = False
    selinux_relabel: bool = False
    recursive_read_only: bool = False
    propagation: MountPropagation = MountPropagation.PROPAGATION_PRIVATE
    image: str = ""


@dataclass
class ContainerMounts:
    """CRI-declared mounts and the CRI status mirror."""

    config_mounts: list[Mount] = field(default_factory=list)
    status_mounts: list[Mount] = field(default_factory=list)


@dataclass
class ContainerEnv:
    """One environment variable from a CRI container config."""

    key: str
    value: str = ""


@dataclass
class ContainerStatusInfo:
    """Lifecycle and config fields from a CRI container status."""

    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    reason: str = ""
    restart_count: Optional[int] = None
    pid_mode: str = ""
    shared_pid: Optional[bool] = None
    envs: list[ContainerEnv] = field(default_factory=list)


@dataclass
class PortMapping:
    """A pod sandbox port mapping as declared through CRI."""

    host_ip: str = ""
    host_port: int = 0
    container_port: int = 0
    protocol: str = ""


@dataclass
class DNSConfig:
    """Pod sandbox DNS settings."""

    domain: str = ""
    servers: list[str] = field(default_factory=list)
    searches: list[str] = field(default_factory=list)
    options: list[str] = field(default_factory=list)


@dataclass
class CNIInterfaceAddress:
    """One CNI-assigned address in CIDR form."""

    cidr: str = ""
    gateway: str = ""
    family: str = ""


@dataclass
class CNIInterface:
    """One interface from a CNI result."""

    name: str = ""
    mac: str = ""
    sandbox: str = ""
    pci_id: str = ""
    socket_path: str = ""
    addresses: list[CNIInterfaceAddress] = field(default_factory=list)


@dataclass
class CNIRoute:
    """One route from a CNI result."""

    destination: str = ""
    gateway: str = ""


@dataclass
class CNIResultInfo:
    """Normalised network data from a CNI result."""

    interfaces: list[CNIInterface] = field(default_factory=list)
    routes: list[CNIRoute] = field(default_factory=list)
    dns: Optional[DNSConfig] = None


@dataclass
class PodSandboxNetwork:
    """Pod sandbox network metadata gathered from CRI."""

    sandbox_id: str = ""
    sandbox_state: str = ""
    primary_ip: str = ""
    additional_ips: list[str] = field(default_factory=list)
    host_network: bool = False
    namespace_mode: str = ""
    namespace_target_id: str = ""
    netns_path: str = ""
    hostname: str = ""
    dns: Optional[DNSConfig] = None
    port_mappings: list[PortMapping] = field(default_factory=list)
    runtime_handler: str = ""
    runtime_type: str = ""
    status_source: str = ""
    config_source: str = ""
    namespace_source: str = ""
    cni: Optional[CNIResultInfo] = None
    warnings: list[str] = field(default_factory=list)


class CRITransport(Protocol):
    """A connection to a CRI runtime service returning verbose statuses."""

    def container_status(self, socket_path: str, container_id: str) -> Mapping[str, Any]:
        ...

    def pod_sandbox_status(self, socket_path: str, sandbox_id: str) -> Mapping[str, Any]:
        ...


class CRIMetadataSource:
    """Reads CRI metadata from the runtime service behind a socket."""

    def __init__(self, socket_path: str, transport: Optional[CRITransport] = None) -> None:
        self.socket_path = socket_path
        self.transport = transport

    def _require(self, identifier: str, what: str) -> CRITransport:
        if not self.socket_path or self.transport is None:
            raise CRIError("cri client not configured")
        if not identifier:
            raise CRIError(f"{what} id is required")
        return self.transport

    def _container_status(self, container_id: str) -> Mapping[str, Any]:
        transport = self._require(container_id, "container")
        try:
            return transport.container_status(self.socket_path, container_id)
        except CRIError:
            raise
        except Exception as err:
            raise CRIError(f"cri container status: {err}") from err

    def inspect_container_mounts(self, container_id: str) -> ContainerMounts:
        """Return the config and status mounts of a container."""
        return decode_container_mounts(self._container_status(container_id))

    def inspect_container_status(self, container_id: str) -> ContainerStatusInfo:
        """Return the lifecycle and config details of a container."""
        return decode_container_status(self._container_status(container_id))

    def inspect_pod_sandbox_network(self, sandbox_id: str) -> PodSandboxNetwork:
        """Return the network metadata of a pod sandbox."""
        transport = self._require(sandbox_id, "sandbox")
        try:
            response = transport.pod_sandbox_status(self.socket_path, sandbox_id)
        except CRIError:
            raise
        except Exception as err:
            raise CRIError(f"cri pod sandbox status: {err}") from err
        return decode_pod_sandbox_network(response)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Look up a JSON field, matching the name case-insensitively."""
    if not isinstance(obj, Mapping):
        return default
    if name in obj:
        value = obj[name]
        return default if value is None else value
    lowered = name.lower()
    for key, value in obj.items():
        if isinstance(key, str) and key.lower() == lowered:
            return default if value is None else value
    return default


def _mapping(obj: Any, name: str) -> Optional[Mapping[str, Any]]:
    value = _field(obj, name)
    return value if isinstance(value, Mapping) else None


def _str(obj: Any, name: str) -> str:
    value = _field(obj, name, "")
    return value if isinstance(value, str) else str(value)


def _int(obj: Any, name: str) -> int:
    return int(_field(obj, name, 0))


def _strings(obj: Any, name: str) -> list[str]:
    return [str(item) for item in _field(obj, name, []) if item is not None]


def _coerce_enum(enum_cls: type[IntEnum], value: Any) -> Any:
    """Turn a number or a name into a member, or leave an unknown value as is."""
    if value is None:
        return enum_cls(0)
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        if value in enum_cls.__members__:
            return enum_cls[value]
        if not value.lstrip("-").isdigit():
            return value
    try:
        return enum_cls(int(value))
    except ValueError:
        return int(value)


def _enum_name(names: Mapping[int, str], value: Any) -> str:
    if value is None:
        return names[0]
    if isinstance(value, str) and not value.lstrip("-").isdigit():
        return value.upper()
    number = int(value)
    return names.get(number, str(number))


def _decode_info(response: Any) -> Any:
    """Return the verbose info document of a response, or None when absent."""
    info_json = _field(_field(response, "info"), "info", "")
    if not info_json:
        return None
    document = json.loads(info_json)
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ValueError(f"cannot decode {type(document).__name__} into an object")
    return document


def _from_nanos(nanos: int) -> datetime:
    return _EPOCH + timedelta(microseconds=nanos // 1000)


def mount_options(mount: Optional[Mount]) -> list[str]:
    """Express CRI mount flags as OCI-like options for display."""
    if mount is None:
        return []
    options = ["ro" if mount.readonly else "rw"]
    if mount.recursive_read_only:
        options.append("rro")
    if mount.selinux_relabel:
        options.append("z")
    propagation = _coerce_enum(MountPropagation, mount.propagation)
    if propagation == MountPropagation.PROPAGATION_PRIVATE:
        options.append("rprivate")
    elif propagation == MountPropagation.PROPAGATION_HOST_TO_CONTAINER:
        options.append("rslave")
    elif propagation == MountPropagation.PROPAGATION_BIDIRECTIONAL:
        options.append("rshared")
    if mount.image:
        options.append("image=" + mount.image)
    return options


def mounts_from_proto(items: Optional[Iterable[Any]]) -> list[Mount]:
    """Build mounts from CRI mount messages, skipping empty entries."""
    mounts = []
    for item in items or ():
        if item is None:
            continue
        propagation = _coerce_enum(MountPropagation, _field(item, "propagation"))
        mounts.append(
            Mount(
                container_path=_str(item, "container_path"),
                host_path=_str(item, "host_path"),
                readonly=bool(_field(item, "readonly", False)),
                selinux_relabel=bool(_field(item, "selinux_relabel", False)),
                recursive_read_only=bool(_field(item, "recursive_read_only", False)),
                propagation=propagation,
                image=_str(_mapping(item, "image"), "image"),
            )
        )
    return mounts


def port_mappings_from_proto(items: Optional[Iterable[Any]]) -> list[PortMapping]:
    """Build port mappings from CRI port mapping messages."""
    mappings = []
    for item in items or ():
        if item is None:
            continue
        mappings.append(
            PortMapping(
                host_ip=_str(item, "host_ip"),
                host_port=_int(item, "host_port") & 0xFFFF,
                container_port=_int(item, "container_port") & 0xFFFF,
                protocol=_enum_name(_PROTOCOL_NAMES, _field(item, "protocol")).lower(),
            )
        )
    return mappings


def decode_container_mounts(response: Mapping[str, Any]) -> ContainerMounts:
    """Extract config and status mounts from a verbose container status."""
    status = _mapping(response, "status")
    result = ContainerMounts(status_mounts=mounts_from_proto(_field(status, "mounts", [])))
    try:
        info = _decode_info(response)
    except ValueError as err:
        raise CRIError(f"decode cri info: {err}") from err
    config = _mapping(info, "config")
    if config is not None:
        result.config_mounts = mounts_from_proto(_field(config, "mounts", []))
    return result


def decode_container_status(response: Optional[Mapping[str, Any]]) -> ContainerStatusInfo:
    """Extract lifecycle, environment and PID mode from a container status."""
    result = ContainerStatusInfo()
    if response is None:
        return result

    status = _mapping(response, "status")
    if status is not None:
        started_at = _int(status, "started_at")
        if started_at > 0:
            result.started_at = _from_nanos(started_at)
        finished_at = _int(status, "finished_at")
        if finished_at > 0:
            result.finished_at = _from_nanos(finished_at)
            result.exit_code = _int(status, "exit_code")
        reason = _str(status, "reason")
        if reason:
            result.reason = reason
        metadata = _mapping(status, "metadata")
        if metadata is not None:
            result.restart_count = _int(metadata, "attempt")

    try:
        info = _decode_info(response)
    except ValueError:
        return result
    config = _mapping(info, "config")
    if config is None:
        return result

    for env in _field(config, "envs", []):
        key = _str(env, "key") if env is not None else ""
        if not key:
            continue
        result.envs.append(ContainerEnv(key=key, value=_str(env, "value")))

    security = _mapping(_mapping(config, "linux"), "security_context")
    options = _mapping(security, "namespace_options")
    if options is not None:
        mode = _coerce_enum(NamespaceMode, _field(options, "pid"))
        label = namespace_mode_label(mode)
        if label:
            result.pid_mode = label
            result.shared_pid = mode in (
                NamespaceMode.POD,
                NamespaceMode.TARGET,
                NamespaceMode.NODE,
                NamespaceMode.CONTAINER,
            )
    return result


def _apply_namespace_options(
    result: PodSandboxNetwork, options: Optional[Mapping[str, Any]], source: str
) -> None:
    if options is None:
        return
    mode = _coerce_enum(NamespaceMode, _field(options, "network"))
    label = namespace_mode_label(mode)
    if label:
        result.namespace_mode = label
        result.namespace_source = source
        if mode == NamespaceMode.NODE:
            result.host_network = True
        elif mode == NamespaceMode.POD:
            result.host_network = False
    target_id = _str(options, "target_id")
    if target_id:
        result.namespace_target_id = target_id


def decode_pod_sandbox_network(response: Optional[Mapping[str, Any]]) -> PodSandboxNetwork:
    """Extract network metadata from a verbose pod sandbox status."""
    result = PodSandboxNetwork()
    if response is None:
        result.warnings.append("pod sandbox status response is nil")
        return result

    status = _mapping(response, "status")
    if status is not None:
        result.sandbox_id = _str(status, "id")
        result.sandbox_state = _enum_name(_SANDBOX_STATE_NAMES, _field(status, "state"))
        result.runtime_handler = _str(status, "runtime_handler")
        result.status_source = "cri-status"

        network = _mapping(status, "network")
        if network is not None:
            result.primary_ip = _str(network, "ip")
            for address in _field(network, "additional_ips", []):
                ip = _str(address, "ip") if address is not None else ""
                if ip:
                    result.additional_ips.append(ip)

        namespaces = _mapping(_mapping(status, "linux"), "namespaces")
        if namespaces is not None:
            _apply_namespace_options(result, _mapping(namespaces, "options"), "cri-status")

    try:
        info = _decode_info(response)
    except ValueError as err:
        result.warnings.append(f"decode cri sandbox info: {err}")
        return result
    if info is None:
        return result

    config = _mapping(info, "config")
    if config is not None:
        result.hostname = _str(config, "hostname")
        result.port_mappings = port_mappings_from_proto(_field(config, "port_mappings", []))
        dns = _mapping(config, "dns_config")
        if dns is not None:
            result.dns = DNSConfig(
                domain="",
                servers=_strings(dns, "servers"),
                searches=_strings(dns, "searches"),
                options=_strings(dns, "options"),
            )
        security = _mapping(_mapping(config, "linux"), "security_context")
        if security is not None:
            _apply_namespace_options(
                result, _mapping(security, "namespace_options"), "cri-info-config"
            )
        result.config_source = "cri-info"

    metadata = _mapping(info, "sandboxMetadata")
    if metadata is not None:
        netns_path = _str(metadata, "NetNSPath")
        if not result.netns_path and netns_path:
            result.netns_path = netns_path
            result.namespace_source = "cri-info-metadata"
        if not result.primary_ip:
            result.primary_ip = _str(metadata, "IP")
        extra_ips = _strings(metadata, "AdditionalIPs")
        if not result.additional_ips and extra_ips:
            result.additional_ips = extra_ips
        if not result.runtime_handler:
            result.runtime_handler = _str(metadata, "RuntimeHandler")

    runtime_spec = _mapping(info, "runtimeSpec")
    if runtime_spec is not None:
        path = runtime_spec_network_path(runtime_spec)
        if path:
            if not result.netns_path:
                result.netns_path = path
                result.namespace_source = "cri-info-runtime-spec"
            elif result.netns_path != path:
                result.warnings.append(
                    f"netns path mismatch: metadata={result.netns_path} spec={path}"
                )

    runtime_type = _str(info, "runtimeType")
    if runtime_type:
        result.runtime_type = runtime_type
    cni = _mapping(info, "cniResult")
    if cni is not None:
        result.cni = normalize_cni_result(cni)
    return result


def _address_family(value: str) -> str:
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return "ipv6"
    if address.version == 4:
        return "ipv4"
    return "ipv4" if address.ipv4_mapped is not None else "ipv6"


def _unique(values: Iterable[str], seen: set[str], into: list[str]) -> None:
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        into.append(value)


def normalize_cni_result(payload: Optional[Mapping[str, Any]]) -> Optional[CNIResultInfo]:
    """Normalise a CNI result; None when it carries nothing of use."""
    if payload is None:
        return None

    info = CNIResultInfo()
    interfaces = _field(payload, "Interfaces", {})
    for name in sorted(interfaces):
        config = interfaces[name]
        if config is None:
            continue
        iface = CNIInterface(
            name=name,
            mac=_str(config, "Mac"),
            sandbox=_str(config, "Sandbox"),
            pci_id=_str(config, "PciID"),
            socket_path=_str(config, "SocketPath"),
        )
        for ip_config in _field(config, "IPConfigs", []):
            if ip_config is None:
                continue
            address = CNIInterfaceAddress()
            ip = _str(ip_config, "IP")
            if ip:
                address.cidr = ip
                address.family = _address_family(ip)
            gateway = _str(ip_config, "Gateway")
            if gateway:
                address.gateway = gateway
            iface.addresses.append(address)
        info.interfaces.append(iface)

    for route in _field(payload, "Routes", []):
        if route is None:
            continue
        info.routes.append(CNIRoute(destination=_str(route, "dst"), gateway=_str(route, "gw")))
    info.routes.sort(key=lambda entry: (entry.destination, entry.gateway))

    records = _field(payload, "DNS", [])
    if records:
        dns = DNSConfig()
        servers: set[str] = set()
        searches: set[str] = set()
        options: set[str] = set()
        for record in records:
            if not dns.domain:
                dns.domain = _str(record, "domain")
            _unique(_strings(record, "nameservers"), servers, dns.servers)
            _unique(_strings(record, "search"), searches, dns.searches)
            _unique(_strings(record, "options"), options, dns.options)
        info.dns = dns

    if not info.interfaces and not info.routes and info.dns is None:
        return None
    return info


def namespace_mode_label(mode: Any) -> str:
    """Return the name of a namespace mode, or "" when it is not one."""
    coerced = _coerce_enum(NamespaceMode, mode) if mode is not None else None
    return coerced.name if isinstance(coerced, NamespaceMode) else ""


def runtime_spec_network_path(spec: Optional[Mapping[str, Any]]) -> str:
    """Return the network namespace path of an OCI runtime spec."""
    linux = _mapping(spec, "linux")
    if linux is None:
        return ""
    for namespace in _field(linux, "namespaces", []):
        if _str(namespace, "type") == "network":
            return _str(namespace, "path")
    return ""