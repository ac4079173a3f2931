"""Merging of CRI, OCI spec and live mount information into one view."""

from __future__ import annotations

import posixpath
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import replace
from typing import Any, Optional

from . import cri
from .models import Mount, MountOrigin, MountState

__all__ = [
    "best_mount_options",
    "best_mount_type",
    "build_mounts_from_spec",
    "clean_container_destination",
    "merge_mount_sources",
    "mount_origin_rank",
    "normalize_run_alias",
    "same_container_destination",
]

_RUNTIME_DEFAULT_TARGETS = frozenset(
    {
        "/proc",
        "/dev",
        "/dev/pts",
        "/dev/shm",
        "/dev/mqueue",
        "/sys",
        "/run",
        "/etc/resolv.conf",
        "/sys/fs/cgroup",
    }
)

_ORIGIN_RANKS = {
    MountOrigin.CRI: 0,
    MountOrigin.RUNTIME_DEFAULT: 1,
    MountOrigin.LIVE_EXTRA: 2,
}


def build_mounts_from_spec(spec_mounts: Optional[Iterable[Mapping[str, Any]]]) -> list[Mount]:
    """Build mounts from the ``mounts`` entries of an OCI runtime spec."""
    return [
        Mount(
            source=entry.get("source") or "",
            destination=entry.get("destination") or "",
            type=entry.get("type") or "",
            options=list(entry.get("options") or []),
        )
        for entry in spec_mounts or ()
    ]


def clean_container_destination(path: str) -> str:
    """Return a lexically cleaned, absolute form of a container path."""
    if not path:
        return ""
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    if not cleaned.startswith("/"):
        cleaned = "/" + cleaned
    return cleaned


def normalize_run_alias(path: str) -> str:
    """Map paths under /var/run onto their /run equivalents."""
    path = clean_container_destination(path)
    if path == "/var/run":
        return "/run"
    if path.startswith("/var/run/"):
        return "/run/" + path[len("/var/run/"):]
    return path


def same_container_destination(left: str, right: str) -> bool:
    """Tell whether two container paths name the same mount point."""
    left = clean_container_destination(left)
    right = clean_container_destination(right)
    if left == right:
        return True
    return normalize_run_alias(left) == normalize_run_alias(right)


def best_mount_type(
    spec_mount: Optional[Mount],
    live_mount: Optional[Mount],
    cri_mount: Optional[cri.Mount],
) -> str:
    """Pick the most informative filesystem type for a merged mount."""
    if spec_mount is not None and spec_mount.type:
        return spec_mount.type
    if live_mount is not None and live_mount.type:
        return live_mount.type
    if cri_mount is not None:
        return "image" if cri_mount.image else "bind"
    return "unknown"


def best_mount_options(
    spec_mount: Optional[Mount],
    live_mount: Optional[Mount],
    cri_options: Optional[Sequence[str]],
) -> list[str]:
    """Pick the most informative option list for a merged mount."""
    if spec_mount is not None and spec_mount.options:
        return list(spec_mount.options)
    if live_mount is not None and live_mount.options:
        return list(live_mount.options)
    if cri_options:
        return list(cri_options)
    return []


def mount_origin_rank(origin: Optional[MountOrigin]) -> int:
    """Return the display rank of a mount origin; unknown origins sort last."""
    return _ORIGIN_RANKS.get(origin, 3)


def _claim(
    mounts: Sequence[Any],
    used: set[int],
    destination: str,
    path_of: Callable[[Any], str],
) -> Any:
    """Find the first unused mount at ``destination`` and mark it used."""
    for index, mount in enumerate(mounts):
        if index in used or mount is None:
            continue
        if same_container_destination(path_of(mount), destination):
            used.add(index)
            return mount
    return None


def _live_source(mount: Optional[Mount]) -> str:
    return mount.source if mount is not None else ""


def _declared_state(live: bool) -> MountState:
    return MountState.DECLARED_LIVE if live else MountState.DECLARED_ONLY


def _clone(mount: Optional[Mount]) -> Mount:
    if mount is None:
        return Mount()
    return replace(mount, options=list(mount.options))


def _cri_mount_note(
    config_mount: cri.Mount,
    status_mount: Optional[cri.Mount],
    live_mount: Optional[Mount],
) -> str:
    parts = ["CRI external mount"]
    if config_mount.image:
        parts.append("image-backed")
    if status_mount is not None:
        parts.append("confirmed by CRI status")
    if live_mount is not None and live_mount.source and live_mount.source != config_mount.host_path:
        parts.append(f"live source {live_mount.source}")
    return "; ".join(parts)


def _build_cri_mount(
    config_mount: cri.Mount,
    status_mount: Optional[cri.Mount],
    spec_mount: Optional[Mount],
    live_mount: Optional[Mount],
) -> Mount:
    host_path = config_mount.host_path
    if not host_path and status_mount is not None:
        host_path = status_mount.host_path
    source = host_path or config_mount.image or _live_source(live_mount)
    return Mount(
        source=source,
        destination=config_mount.container_path,
        type=best_mount_type(spec_mount, live_mount, config_mount),
        options=best_mount_options(spec_mount, live_mount, cri.mount_options(config_mount)),
        host_path=host_path,
        live_source=_live_source(live_mount),
        origin=MountOrigin.CRI,
        state=_declared_state(status_mount is not None or live_mount is not None),
        note=_cri_mount_note(config_mount, status_mount, live_mount),
    )


def _build_cri_status_only_mount(status_mount: cri.Mount, live_mount: Optional[Mount]) -> Mount:
    return Mount(
        source=status_mount.host_path or _live_source(live_mount),
        destination=status_mount.container_path,
        type=best_mount_type(None, live_mount, status_mount),
        options=best_mount_options(None, live_mount, cri.mount_options(status_mount)),
        host_path=status_mount.host_path,
        live_source=_live_source(live_mount),
        origin=MountOrigin.CRI,
        state=MountState.LIVE_ONLY,
        note="status-only CRI mount",
    )


def _build_runtime_default_mount(spec_mount: Mount, live_mount: Optional[Mount]) -> Mount:
    mount = _clone(spec_mount)
    mount.host_path = spec_mount.source
    mount.origin = MountOrigin.RUNTIME_DEFAULT
    mount.live_source = _live_source(live_mount)
    mount.state = _declared_state(live_mount is not None)
    if spec_mount.destination in _RUNTIME_DEFAULT_TARGETS:
        mount.note = "runtime default support mount"
    else:
        mount.note = "spec mount not claimed by CRI"
    if live_mount is not None:
        mount.type = best_mount_type(spec_mount, live_mount, None)
        mount.options = best_mount_options(spec_mount, live_mount, None)
    return mount


def _build_live_extra_mount(live_mount: Mount) -> Mount:
    mount = _clone(live_mount)
    mount.host_path = ""
    mount.live_source = live_mount.source
    mount.origin = MountOrigin.LIVE_EXTRA
    mount.state = MountState.LIVE_ONLY
    mount.note = "live mountinfo entry outside CRI and spec declarations"
    return mount


def merge_mount_sources(
    cri_mounts: Optional[cri.ContainerMounts],
    spec_mounts: Optional[Sequence[Mount]],
    live_mounts: Optional[Sequence[Mount]],
) -> list[Mount]:
    """Merge CRI-declared, spec-declared and live mounts into one sorted list.

    CRI config mounts claim matching status, spec and live entries first;
    leftover status mounts, spec mounts and live mounts follow in that order.
    """
    spec_mounts = list(spec_mounts or [])
    live_mounts = list(live_mounts or [])
    config_list = list(cri_mounts.config_mounts) if cri_mounts is not None else []
    status_list = list(cri_mounts.status_mounts) if cri_mounts is not None else []

    spec_used: set[int] = set()
    live_used: set[int] = set()
    status_used: set[int] = set()

    def by_destination(mount: Mount) -> str:
        return mount.destination

    def by_container_path(mount: cri.Mount) -> str:
        return mount.container_path

    result: list[Mount] = []
    for config_mount in config_list:
        if config_mount is None:
            continue
        path = config_mount.container_path
        status_match = _claim(status_list, status_used, path, by_container_path)
        spec_match = _claim(spec_mounts, spec_used, path, by_destination)
        live_match = _claim(live_mounts, live_used, path, by_destination)
        result.append(_build_cri_mount(config_mount, status_match, spec_match, live_match))

    for index, status_mount in enumerate(status_list):
        if index in status_used or status_mount is None:
            continue
        live_match = _claim(live_mounts, live_used, status_mount.container_path, by_destination)
        result.append(_build_cri_status_only_mount(status_mount, live_match))

    for index, spec_mount in enumerate(spec_mounts):
        if index in spec_used or spec_mount is None:
            continue
        live_match = _claim(live_mounts, live_used, spec_mount.destination, by_destination)
        result.append(_build_runtime_default_mount(spec_mount, live_match))

    for index, live_mount in enumerate(live_mounts):
        if index in live_used or live_mount is None:
            continue
        result.append(_build_live_extra_mount(live_mount))

    result.sort(
        key=lambda mount: (
            mount_origin_rank(mount.origin),
            mount.destination,
            mount.source,
            mount.type,
        )
    )
    return result