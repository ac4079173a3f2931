"""Data records describing containers, images, pods and processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class _StrEnum(str, Enum):
    """String-valued enumeration that prints as its value."""

    def __str__(self) -> str:
        return self.value


class ContainerStatus(_StrEnum):
    """Lifecycle state of a container."""

    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class MountOrigin(_StrEnum):
    """Which subsystem contributed a mount row."""

    CRI = "cri"
    RUNTIME_DEFAULT = "runtime-default"
    LIVE_EXTRA = "live-extra"


class MountState(_StrEnum):
    """Whether a mount was declared, observed live, or both."""

    DECLARED_LIVE = "declared+live"
    DECLARED_ONLY = "declared-only"
    LIVE_ONLY = "live-only"


@dataclass
class EnvVar:
    """One process environment variable."""

    key: str
    value: str = ""
    is_kubernetes: bool = False


@dataclass
class Container:
    """A container instance."""

    id: str = ""
    name: str = ""
    image: str = ""
    image_id: str = ""
    status: ContainerStatus = ContainerStatus.UNKNOWN
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    pid: int = 0  # host PID of the main process

    pod_name: str = ""
    pod_namespace: str = ""
    pod_uid: str = ""

    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class CGroupLimits:
    """Resource limits and usage read from a cgroup."""

    cpu_quota: int = 0  # microseconds
    cpu_period: int = 0  # microseconds
    cpu_shares: int = 0

    memory_limit: int = 0  # bytes
    memory_usage: int = 0  # bytes

    pids_limit: int = 0
    pids_current: int = 0

    blkio_weight: int = 0


@dataclass
class Mount:
    """A filesystem mount."""

    source: str = ""
    destination: str = ""
    type: str = ""
    options: list[str] = field(default_factory=list)
    host_path: str = ""
    live_source: str = ""
    origin: Optional[MountOrigin] = None
    state: Optional[MountState] = None
    note: str = ""


@dataclass
class PortMapping:
    """A host-to-container port mapping."""

    host_ip: str = ""
    host_port: int = 0
    container_port: int = 0
    protocol: str = ""  # tcp or udp


@dataclass
class DNSConfig:
    """Pod-level DNS settings."""

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
    """One interface returned by a CNI result."""

    name: str = ""
    mac: str = ""
    sandbox: str = ""
    pci_id: str = ""
    socket_path: str = ""
    addresses: list[CNIInterfaceAddress] = field(default_factory=list)


@dataclass
class CNIRoute:
    """One route returned by a CNI result."""

    destination: str = ""
    gateway: str = ""


@dataclass
class CNIResultInfo:
    """Normalised network data from a CNI result."""

    interfaces: list[CNIInterface] = field(default_factory=list)
    routes: list[CNIRoute] = field(default_factory=list)
    dns: Optional[DNSConfig] = None


@dataclass
class NetworkStats:
    """Network IO counters for a single interface."""

    interface: str = ""

    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_packets: int = 0
    tx_packets: int = 0
    rx_errors: int = 0
    tx_errors: int = 0
    rx_dropped: int = 0
    tx_dropped: int = 0

    rx_bytes_per_sec: float = 0.0
    tx_bytes_per_sec: float = 0.0


@dataclass
class PodNetworkInfo:
    """Pod sandbox network metadata."""

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
    observed_interfaces: list[NetworkStats] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class OCIInfo:
    """OCI runtime and bundle metadata."""

    runtime_name: str = ""
    runtime_binary: str = ""
    state_dir: str = ""
    bundle_dir: str = ""
    config_path: str = ""
    sandbox_id: str = ""
    config_source: str = ""
    state_dir_source: str = ""
    bundle_dir_source: str = ""
    runtime_source: str = ""


@dataclass
class ShimInfo:
    """Metadata about the shim process serving a task."""

    pid: int = 0
    binary_path: str = ""
    socket_address: str = ""
    cmdline: list[str] = field(default_factory=list)
    bundle_dir: str = ""
    sandbox_bundle_dir: str = ""
    source: str = ""


@dataclass
class CGroupInfo:
    """Cgroup location of a task."""

    relative_path: str = ""
    absolute_path: str = ""
    version: int = 0
    driver: str = ""
    source: str = ""


@dataclass
class RootFSInfo:
    """Root filesystem paths of a running container."""

    bundle_rootfs_path: str = ""
    mount_rootfs_path: str = ""
    source: str = ""


@dataclass
class RuntimeProfile:
    """Runtime-specific information grouped by concern."""

    oci: Optional[OCIInfo] = None
    shim: Optional[ShimInfo] = None
    cgroup: Optional[CGroupInfo] = None
    rootfs: Optional[RootFSInfo] = None


@dataclass
class ImageConfigInfo:
    """Metadata about an image config blob."""

    digest: str = ""
    content_path: str = ""
    size: int = 0
    target_media_type: str = ""
    target_kind: str = ""
    schema: str = ""


@dataclass
class Process:
    """A process running inside a container."""

    pid: int = 0
    ppid: int = 0
    command: str = ""
    args: list[str] = field(default_factory=list)
    state: str = ""

    utime: int = 0  # user-mode clock ticks
    stime: int = 0  # system-mode clock ticks

    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    memory_rss: int = 0  # bytes
    memory_vms: int = 0  # bytes

    read_bytes: int = 0
    write_bytes: int = 0
    read_ops: int = 0
    write_ops: int = 0

    read_bytes_per_sec: float = 0.0
    write_bytes_per_sec: float = 0.0

    children: list[Process] = field(default_factory=list)


@dataclass
class ProcessTop:
    """A top-like snapshot of a container's processes."""

    processes: list[Process] = field(default_factory=list)
    network_io: list[NetworkStats] = field(default_factory=list)
    timestamp: int = 0  # Unix seconds
    cpu_cores: float = 0.0  # 0 means unlimited
    memory_limit: int = 0  # bytes, 0 means unlimited


@dataclass
class ContainerDetail(Container):
    """A container together with its runtime, image and network details."""

    process_count: int = 0
    processes: list[Process] = field(default_factory=list)
    environment: list[EnvVar] = field(default_factory=list)
    shared_pid: Optional[bool] = None
    restart_count: Optional[int] = None
    exited_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    exit_reason: str = ""

    cgroup_path: str = ""
    cgroup_version: int = 0  # 1 or 2
    cgroup_limits: Optional[CGroupLimits] = None

    image_name: str = ""
    image_config: Optional[ImageConfigInfo] = None
    image_layers: list[str] = field(default_factory=list)
    snapshot_key: str = ""  # active RW snapshot key
    read_only_layer_path: str = ""
    writable_layer_path: str = ""
    mount_count: int = 0
    mounts: list[Mount] = field(default_factory=list)

    shim_pid: int = 0
    oci_bundle_path: str = ""
    oci_runtime_dir: str = ""
    namespaces: dict[str, str] = field(default_factory=dict)
    snapshotter: str = ""
    runtime_profile: Optional[RuntimeProfile] = None

    rw_layer_size: int = 0
    rw_layer_usage: int = 0
    rw_layer_inodes: int = 0

    ip_address: str = ""
    port_mappings: list[PortMapping] = field(default_factory=list)
    pod_network: Optional[PodNetworkInfo] = None


@dataclass
class Image:
    """A container image."""

    name: str = ""
    digest: str = ""
    size: int = 0
    created_at: Optional[datetime] = None
    labels: dict[str, str] = field(default_factory=dict)
    layers: list[str] = field(default_factory=list)


@dataclass
class ImageLayer:
    """One layer of an image, indexed from the base (0) upwards."""

    index: int = 0
    label: str = ""
    compressed_digest: str = ""
    uncompressed_digest: str = ""
    size: int = 0
    compression_type: str = ""
    content_path: str = ""
    snapshot_key: str = ""  # chain ID
    snapshot_path: str = ""
    snapshot_exists: bool = False
    usage_size: int = 0
    usage_inodes: int = 0


@dataclass
class Pod:
    """A Kubernetes pod assembled from container labels."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    containers: list[Container] = field(default_factory=list)