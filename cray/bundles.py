"""Locating OCI bundles, runtime state directories and shim sockets on disk."""

from __future__ import annotations

import hashlib
import json
import posixpath
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, NamedTuple, Optional

from .containers import ContainerInfo, RuntimeInfo

__all__ = [
    "DEFAULT_RUNC_ROOT",
    "RUNTIME_V2_STATE_BASE",
    "ShimSocket",
    "compute_shim_socket_address",
    "infer_cgroup_driver",
    "is_runc_runtime_name",
    "is_shim_process",
    "read_address_file",
    "read_bootstrap_address",
    "resolve_oci_bundle_dir",
    "resolve_oci_state_dir",
    "resolve_runc_root",
    "resolve_runtime_binary_path",
    "resolve_shim_socket_address",
]

RUNTIME_V2_STATE_BASE = "/run/containerd/io.containerd.runtime.v2.task"
DEFAULT_RUNC_ROOT = "/run/containerd/runc"


class ShimSocket(NamedTuple):
    """Where a shim listens and how that was found out."""

    address: str
    sandbox_id: str
    sandbox_bundle_dir: str
    source: str


def _join(*parts: str) -> str:
    """Join path elements, ignoring empty ones, and clean the result."""
    present = [part for part in parts if part]
    if not present:
        return ""
    return posixpath.normpath(posixpath.join(*present))


def _base(path: str) -> str:
    """Return the last element of a path, treating trailing slashes as absent."""
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _dir(path: str) -> str:
    return posixpath.dirname(posixpath.normpath(path)) or "."


def _option(options: Optional[Mapping[str, Any]], name: str) -> str:
    """Look up a runtime option, tolerating snake_case and CamelCase keys."""
    if not isinstance(options, Mapping):
        return ""
    wanted = name.replace("_", "").lower()
    for key, value in options.items():
        if isinstance(key, str) and key.replace("_", "").lower() == wanted:
            return value if isinstance(value, str) else ""
    return ""


def _runc_options(runtime_info: RuntimeInfo) -> Optional[Mapping[str, Any]]:
    options = runtime_info.options
    return options if isinstance(options, Mapping) else None


def is_shim_process(exe_path: str, cmdline: Optional[list[str]]) -> bool:
    """Tell whether a process is a containerd shim by its binary or argv[0]."""
    if "containerd-shim" in _base(exe_path):
        return True
    return bool(cmdline) and "containerd-shim" in _base(cmdline[0])


def is_runc_runtime_name(runtime_name: str) -> bool:
    """Tell whether a runtime name refers to runc."""
    return ".runc." in runtime_name or runtime_name.endswith("runc")


def infer_cgroup_driver(path: str) -> str:
    """Guess the cgroup driver from the shape of a cgroup path."""
    if not path:
        return ""
    if ".slice" in path or ":cri-containerd:" in path:
        return "systemd"
    return "cgroupfs"


def compute_shim_socket_address(namespace: str, container_id: str) -> str:
    """Return the socket address containerd derives for a task's shim."""
    path = _join(RUNTIME_V2_STATE_BASE, namespace, container_id)
    digest = hashlib.sha256(path.encode()).hexdigest()
    return f"unix:///run/containerd/s/{digest}"


def read_bootstrap_address(path: str) -> str:
    """Read a shim address from a bootstrap.json file.

    Raises OSError when the file cannot be read and ValueError when it holds
    no usable address.
    """
    document = json.loads(Path(path).read_bytes())
    if document is None:
        document = {}
    if not isinstance(document, Mapping):
        raise ValueError(f"cannot decode {type(document).__name__} into bootstrap parameters")
    address = _option(document, "address")
    protocol = _option(document, "protocol")
    if not address:
        raise ValueError("bootstrap address missing")
    if protocol:
        return f"{protocol}+{address}"
    return address


def read_address_file(path: str) -> str:
    """Read a shim address from a plain address file."""
    value = Path(path).read_bytes().decode("utf-8", "replace").strip()
    if not value:
        raise ValueError("address file empty")
    return value


def resolve_oci_bundle_dir(namespace: str, container_id: str) -> tuple[str, str]:
    """Return the bundle directory of a task and where the answer came from."""
    return _join(RUNTIME_V2_STATE_BASE, namespace, container_id), "convention"


def resolve_runc_root(runtime_info: RuntimeInfo) -> tuple[str, str]:
    """Return the runc state root and its source, or two empty strings."""
    options = _runc_options(runtime_info)
    if options is not None:
        root = _option(options, "root")
        if root:
            return root, "runtime-options"
    if is_runc_runtime_name(runtime_info.name):
        return DEFAULT_RUNC_ROOT, "runtime-default"
    return "", ""


def resolve_oci_state_dir(info: ContainerInfo, namespace: str) -> tuple[str, str]:
    """Return the OCI runtime state directory of a container and its source."""
    root, source = resolve_runc_root(info.runtime)
    if root:
        return _join(root, namespace, info.id), source
    return _join(RUNTIME_V2_STATE_BASE, namespace, info.id), "convention"


def resolve_runtime_binary_path(
    bundle_dir: str, runtime_info: RuntimeInfo, shim_binary_path: str = ""
) -> tuple[str, str]:
    """Return the runtime binary of a task and where the answer came from.

    ``shim_binary_path`` is the executable of the serving shim process, when
    it is known.
    """
    binary_name = _option(_runc_options(runtime_info), "binary_name")
    if binary_name:
        return binary_name, "runtime-options"

    try:
        recorded = (Path(bundle_dir) / "shim-binary-path").read_bytes()
    except OSError:
        recorded = b""
    value = recorded.decode("utf-8", "replace").strip()
    if value:
        return value, "bundle"

    if shim_binary_path:
        return shim_binary_path, "procfs"

    runtime_name = runtime_info.name
    if runtime_name.startswith("/"):
        return runtime_name, "containerd"
    parts = runtime_name.split(".")
    if len(parts) >= 2:
        return f"containerd-shim-{parts[-2]}-{parts[-1]}", "derived"
    return runtime_name, "derived"


def _try_read(reader: Callable[[str], str], path: str) -> Optional[str]:
    try:
        return reader(path)
    except (OSError, ValueError):
        return None


def resolve_shim_socket_address(
    namespace: str, bundle_dir: str, container_id: str, sandbox_id_hint: str = ""
) -> ShimSocket:
    """Find the shim socket of a task from its bundle, its sandbox, or by derivation."""
    for reader, name in ((read_bootstrap_address, "bootstrap.json"), (read_address_file, "address")):
        address = _try_read(reader, _join(bundle_dir, name))
        if address is not None:
            return ShimSocket(address, "", "", "bundle")

    sandbox_id = sandbox_id_hint
    if not sandbox_id:
        try:
            sandbox_id = (
                (Path(bundle_dir) / "sandbox").read_bytes().decode("utf-8", "replace").strip()
            )
        except OSError:
            sandbox_id = ""

    if sandbox_id:
        sandbox_bundle_dir = _join(_dir(bundle_dir), sandbox_id)
        for reader, name in (
            (read_bootstrap_address, "bootstrap.json"),
            (read_address_file, "address"),
        ):
            address = _try_read(reader, _join(sandbox_bundle_dir, name))
            if address is not None:
                return ShimSocket(address, sandbox_id, sandbox_bundle_dir, "sandbox-bundle")
        return ShimSocket(
            compute_shim_socket_address(namespace, sandbox_id),
            sandbox_id,
            sandbox_bundle_dir,
            "inferred",
        )

    return ShimSocket(compute_shim_socket_address(namespace, container_id), "", "", "inferred")