"""Plain-text reports of containers, images and pods for the ``test`` command."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .models import (
    Container,
    ContainerDetail,
    Image,
    ImageLayer,
    Mount,
    Pod,
    Process,
    ProcessTop,
)

__all__ = [
    "CommandError",
    "TEST_USAGE",
    "UsageError",
    "format_bytes",
    "format_content_size",
    "get_env_or_default",
    "render_container_detail",
    "render_containers",
    "render_image_layers",
    "render_images",
    "render_mounts",
    "render_pods",
    "render_processes",
    "render_top",
    "run_command",
    "truncate_digest",
]

_KB = 1024
_MB = 1024 * _KB
_GB = 1024 * _MB
_TB = 1024 * _GB

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_ZERO_TIME = "0001-01-01 00:00:00"

TEST_USAGE = "\n".join(
    [
        "Usage: cray test <command>",
        "",
        "Available commands:",
        "  Containers:",
        "    list-containers                    List all containers",
        "    container-detail <id>              Show container details",
        "    container-processes <id>           List container processes",
        "    container-top <id>                 Show top-like process info",
        "    container-mounts <id>              List container mounts",
        "",
        "  Images:",
        "    list-images                        List all images",
        "    image-detail <ref>                 Show image details",
        "    image-layers <id> [snapshotter]    Show image layers",
        "    container-layers <id>              Show container's image layers"
        " (auto-detect snapshotter)",
        "",
        "  Pods:",
        "    list-pods                          List all pods",
    ]
)


class CommandError(Exception):
    """Raised when a report command cannot complete."""


class UsageError(CommandError):
    """Raised when a report command is called the wrong way."""


def format_bytes(size: int) -> str:
    """Format a byte count with a binary unit."""
    for limit, unit in ((_TB, "TB"), (_GB, "GB"), (_MB, "MB"), (_KB, "KB")):
        if size >= limit:
            return f"{size / limit:.2f} {unit}"
    return f"{size} B"


def format_content_size(size: int, compression: str) -> str:
    """Format a content size followed by its compression in parentheses."""
    return f"{format_bytes(size)}({compression or '-'})"


def truncate_digest(digest: str, length: int) -> str:
    """Cut a digest down to at most ``length`` characters."""
    return digest[:length]


def get_env_or_default(key: str, default: str) -> str:
    """Return an environment variable, or ``default`` when unset or empty."""
    return os.environ.get(key) or default


def _text(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return "" if value is None else str(value)


def _megabytes(size: int) -> str:
    return f"{size / _MB:.2f} MB"


def _timestamp(moment: Optional[datetime]) -> str:
    return moment.strftime(_TIME_FORMAT) if moment is not None else _ZERO_TIME


def _go_list(values: Iterable[Any]) -> str:
    return "[" + " ".join(str(value) for value in values) + "]"


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _join(lines: Iterable[str]) -> str:
    return "".join(line + "\n" for line in lines)


def render_containers(containers: Sequence[Container]) -> str:
    """Describe each container in turn."""
    lines = [f"Found {len(containers)} containers:", ""]
    for number, container in enumerate(containers, 1):
        lines += [
            f"[{number}] Container:",
            f"  ID:        {container.id[:12]}",
            f"  Name:      {container.name}",
            f"  Image:     {container.image}",
            f"  Status:    {_text(container.status)}",
            f"  PID:       {container.pid}",
        ]
        if container.pod_name:
            lines.append(f"  Pod:       {container.pod_namespace}/{container.pod_name}")
        lines.append("")
    return _join(lines)


def render_images(images: Sequence[Image]) -> str:
    """Describe each image in turn."""
    lines = [f"Found {len(images)} images:", ""]
    for number, image in enumerate(images, 1):
        lines += [
            f"[{number}] Image:",
            f"  Name:      {image.name}",
            f"  Digest:    {image.digest[:20]}...",
            f"  Size:      {_megabytes(image.size)}",
            f"  Created:   {_timestamp(image.created_at)}",
            "",
        ]
    return _join(lines)


def render_pods(pods: Sequence[Pod]) -> str:
    """Describe each pod and the containers in it."""
    lines = [f"Found {len(pods)} pods:", ""]
    for number, pod in enumerate(pods, 1):
        lines += [
            f"[{number}] Pod:",
            f"  Name:       {pod.name}",
            f"  Namespace:  {pod.namespace}",
            f"  UID:        {pod.uid}",
            f"  Containers: {len(pod.containers)}",
        ]
        lines += [
            f"    [{index}] {container.name} ({_text(container.status)})"
            for index, container in enumerate(pod.containers, 1)
        ]
        lines.append("")
    return _join(lines)


def render_container_detail(detail: ContainerDetail) -> str:
    """Describe a container's runtime details section by section."""
    lines = [
        "",
        "--- Basic Info ---",
        f"ID:            {detail.id}",
        f"Name:          {detail.name}",
        f"Image:         {detail.image}",
        f"Status:        {_text(detail.status)}",
        f"PID:           {detail.pid}",
    ]
    if detail.pod_name:
        lines += [
            "",
            "--- Pod Info ---",
            f"Pod Name:      {detail.pod_name}",
            f"Namespace:     {detail.pod_namespace}",
            f"Pod UID:       {detail.pod_uid}",
        ]
    lines += ["", "--- Process Info ---", f"Process Count: {detail.process_count}"]

    limits = detail.cgroup_limits
    if limits is not None:
        lines += [
            "",
            "--- CGroup Limits ---",
            f"CGroup Version: v{detail.cgroup_version}",
            f"CGroup Path:    {detail.cgroup_path}",
        ]
        if limits.cpu_quota > 0:
            lines.append(f"CPU Quota:      {limits.cpu_quota} us")
            lines.append(f"CPU Period:     {limits.cpu_period} us")
        if limits.cpu_shares > 0:
            lines.append(f"CPU Shares:     {limits.cpu_shares}")
        if limits.memory_limit > 0:
            lines.append(f"Memory Limit:   {_megabytes(limits.memory_limit)}")
        if limits.memory_usage > 0:
            lines.append(f"Memory Usage:   {_megabytes(limits.memory_usage)}")
        if limits.pids_limit > 0:
            lines.append(f"PIDs Limit:     {limits.pids_limit}")
        if limits.pids_current > 0:
            lines.append(f"PIDs Current:   {limits.pids_current}")

    lines += ["", "--- Mount Info ---", f"Mount Count:   {detail.mount_count}"]
    if detail.mounts:
        lines += ["", "First 5 mounts:"]
        lines += [
            f"  [{number}] {mount.source} -> {mount.destination} ({mount.type})"
            for number, mount in enumerate(detail.mounts[:5], 1)
        ]

    lines += ["", "--- Image Info ---", f"Image Name:    {detail.image_name}"]
    if detail.writable_layer_path:
        lines.append(f"Writable Layer: {detail.writable_layer_path}")
    return _join(lines)


def render_processes(processes: Sequence[Process]) -> str:
    """Describe each process of a container."""
    lines = [f"Found {len(processes)} processes:", ""]
    for number, process in enumerate(processes, 1):
        lines.append(
            f"[{number}] PID: {process.pid}, PPID: {process.ppid}, State: {process.state}"
        )
        lines.append(f"    Command: {process.command}")
        if process.args:
            lines.append(f"    Args: {_go_list(process.args)}")
        if process.cpu_percent > 0:
            lines.append(f"    CPU: {process.cpu_percent:.2f}%")
        if process.memory_rss > 0:
            lines.append(f"    Memory RSS: {_megabytes(process.memory_rss)}")
        lines.append("")
    return _join(lines)


def render_top(top: ProcessTop) -> str:
    """Lay out process usage as a top-like table."""
    lines = [
        f"Timestamp: {top.timestamp}",
        f"Processes: {len(top.processes)}",
        "",
        f"{'PID':<8} {'PPID':<8} {'CPU%':<10} {'MEM%':<10} {'RSS(MB)':<10} COMMAND",
        "-" * 80,
    ]
    for process in top.processes:
        rss = process.memory_rss / _MB
        lines.append(
            f"{process.pid:<8d} {process.ppid:<8d} {process.cpu_percent:<10.2f} "
            f"{process.memory_percent:<10.2f} {rss:<10.2f} {process.command}"
        )
    return _join(lines)


def render_mounts(mounts: Sequence[Mount]) -> str:
    """List each mount with its options."""
    lines = [f"Found {len(mounts)} mounts:", ""]
    for number, mount in enumerate(mounts, 1):
        lines.append(f"[{number}] {mount.source} -> {mount.destination} ({mount.type})")
        if mount.options:
            lines.append(f"    Options: {_go_list(mount.options)}")
    return _join(lines)


def render_image_layers(layers: Sequence[ImageLayer], show_unavailable: bool = False) -> str:
    """Describe image layers from the top layer down to the base.

    With ``show_unavailable``, unpacked layers whose path is unknown say so.
    """
    total = len(layers)
    lines = [f"Found {total} layers:", ""]
    for layer in reversed(layers):
        lines += [
            f"[Layer {layer.index}/{total}]",
            f"  Snapshot Key:    {layer.snapshot_key}",
            f"  Compressed:      {truncate_digest(layer.compressed_digest, 19)}",
            f"  Uncompressed:    {truncate_digest(layer.uncompressed_digest, 19)}",
            f"  Content Size:    {format_content_size(layer.size, layer.compression_type)}",
        ]
        if layer.snapshot_exists and layer.usage_size > 0:
            lines.append(
                f"  Disk Usage:      {format_bytes(layer.usage_size)} "
                f"({layer.usage_inodes} inodes)"
            )
        lines.append(f"  Unpacked:        {_bool(layer.snapshot_exists)}")
        if layer.snapshot_path:
            lines.append(f"  Snapshot Path:   {layer.snapshot_path}")
        elif show_unavailable and layer.snapshot_exists:
            lines.append("  Snapshot Path:   (not available)")
        if layer.content_path:
            lines.append(f"  Content Path:    {layer.content_path}")
        lines.append("")
    return _join(lines)


def _call(prefix: str, func: Callable[..., Any], *args: Any) -> Any:
    try:
        return func(*args)
    except CommandError:
        raise
    except Exception as err:
        raise CommandError(f"{prefix}: {err}") from err


def _require_id(rest: Sequence[str], usage: str) -> str:
    if not rest:
        raise UsageError(f"Usage: cray test {usage}")
    return rest[0]


def _list_containers(runtime: Any, rest: Sequence[str]) -> str:
    containers = _call("Error", runtime.list_containers)
    return "=== Listing Containers ===\n" + render_containers(containers)


def _list_images(runtime: Any, rest: Sequence[str]) -> str:
    images = _call("Error", runtime.list_images)
    return "=== Listing Images ===\n" + render_images(images)


def _list_pods(runtime: Any, rest: Sequence[str]) -> str:
    pods = _call("Error", runtime.list_pods)
    return "=== Listing Pods ===\n" + render_pods(pods)


def _container_detail(runtime: Any, rest: Sequence[str]) -> str:
    container_id = _require_id(rest, "container-detail <container-id>")
    detail = _call("Error", runtime.get_container_runtime_info, container_id)
    return f"=== Container Detail: {container_id} ===\n" + render_container_detail(detail)


def _container_processes(runtime: Any, rest: Sequence[str]) -> str:
    container_id = _require_id(rest, "container-processes <container-id>")
    processes = _call("Error", runtime.get_container_processes, container_id)
    return f"=== Container Processes: {container_id} ===\n" + render_processes(processes)


def _container_top(runtime: Any, rest: Sequence[str]) -> str:
    container_id = _require_id(rest, "container-top <container-id>")
    top = _call("Error", runtime.get_container_top, container_id)
    return f"=== Container Top: {container_id} ===\n" + render_top(top)


def _container_mounts(runtime: Any, rest: Sequence[str]) -> str:
    container_id = _require_id(rest, "container-mounts <container-id>")
    mounts = _call("Error", runtime.get_container_mounts, container_id)
    return f"=== Container Mounts: {container_id} ===\n" + render_mounts(mounts)


def _image_detail(runtime: Any, rest: Sequence[str]) -> str:
    ref = _require_id(rest, "image-detail <image-ref>")
    image = _call("Error", runtime.get_image, ref)
    lines = [
        f"=== Image Detail: {ref} ===",
        "",
        "--- Basic Info ---",
        f"Name:      {image.name}",
        f"Digest:    {image.digest}",
        f"Size:      {_megabytes(image.size)}",
        f"Created:   {_timestamp(image.created_at)}",
    ]
    if image.labels:
        lines += ["", "--- Labels ---"]
        lines += [f"  {key}: {value}" for key, value in sorted(image.labels.items())]

    try:
        config_info = runtime.get_image_config_info(ref)
    except Exception:
        config_info = None
    if config_info is not None:
        lines += [
            "",
            "--- Config Info ---",
            f"Digest:      {config_info.digest}",
            f"Size:        {format_bytes(config_info.size)}",
            f"Content Path: {config_info.content_path}",
        ]
    return _join(lines)


def _image_layers(runtime: Any, rest: Sequence[str]) -> str:
    image_id = _require_id(
        rest, "image-layers <image-id> [snapshotter] [rw-snapshot-key]"
    )
    snapshotter = rest[1] if len(rest) >= 2 else ""
    rw_key = rest[2] if len(rest) >= 3 else ""
    lines = [f"=== Image Layers: {image_id} ==="]
    if snapshotter:
        lines.append(f"Snapshotter: {snapshotter}")
    if rw_key:
        lines.append(f"RW Snapshot Key: {rw_key}")
    lines.append("")
    layers = _call("Error", runtime.get_image_layers, image_id, snapshotter, rw_key)
    return _join(lines) + render_image_layers(layers)


def _container_layers(runtime: Any, rest: Sequence[str]) -> str:
    container_id = _require_id(rest, "container-layers <container-id>")
    detail = _call(
        "Error getting container detail", runtime.get_container_runtime_info, container_id
    )
    lines = [
        f"=== Container Layers: {container_id} ===",
        "",
        f"Container:   {detail.name}",
        f"Image:       {detail.image}",
        f"Snapshotter: {detail.snapshotter}",
        f"RW Key:      {detail.snapshot_key}",
    ]
    if detail.rw_layer_usage > 0:
        lines.append(
            f"RW Usage:    {format_bytes(detail.rw_layer_usage)} "
            f"({detail.rw_layer_inodes} inodes)"
        )
    lines.append("")
    if not detail.image:
        raise CommandError("Error: container has no image")
    layers = _call(
        "Error getting image layers",
        runtime.get_image_layers,
        detail.image,
        detail.snapshotter,
        detail.snapshot_key,
    )
    return _join(lines) + render_image_layers(layers, show_unavailable=True)


_COMMANDS: dict[str, Callable[[Any, Sequence[str]], str]] = {
    "list-containers": _list_containers,
    "list-images": _list_images,
    "list-pods": _list_pods,
    "container-detail": _container_detail,
    "container-processes": _container_processes,
    "container-top": _container_top,
    "container-mounts": _container_mounts,
    "image-detail": _image_detail,
    "image-layers": _image_layers,
    "container-layers": _container_layers,
}


def run_command(runtime: Any, args: Sequence[str]) -> str:
    """Connect to ``runtime``, run one report command and return its text.

    Raises UsageError for missing or unknown commands and arguments, and
    CommandError when the runtime reports a failure.
    """
    args = list(args)
    if not args:
        raise UsageError(TEST_USAGE)
    command, rest = args[0], args[1:]

    _call("Failed to connect to containerd", runtime.connect)
    try:
        handler = _COMMANDS.get(command)
        if handler is None:
            raise UsageError(f"Unknown command: {command}")
        return handler(runtime, rest)
    finally:
        runtime.close()