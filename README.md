# cray

`cray` is a library of building blocks for looking inside a containerd
host: container records and their Kubernetes pod membership, image layer
chains, mounts as declared by CRI and the OCI spec versus what is live in
the process, the pod sandbox network, and where the runtime keeps its
bundles, state directories and shim sockets. It also renders all of these
as plain-text reports.

It is pure Python with no third-party dependencies.

## What is in the package

| Module            | Purpose |
|-------------------|---------|
| `cray.models`     | Dataclasses for containers, container details, mounts, images, layers, pods, processes and network stats, plus the `ContainerStatus`, `MountOrigin` and `MountState` enums. |
| `cray.cri`        | Decoding of CRI container and pod sandbox status responses (given as mappings), CNI results and mount flags; `CRIMetadataSource` over a pluggable transport. |
| `cray.mounts`     | Merging of CRI, spec and live mounts into one annotated, sorted list. |
| `cray.containers` | Container records from runtime metadata, spec environment and namespaces, pod grouping, pod network assembly. |
| `cray.bundles`    | Locating OCI bundles, runc state directories, runtime binaries and shim sockets. |
| `cray.images`     | Chain IDs, content store paths, compression types, diff ID parsing and per-layer records. |
| `cray.report`     | Plain-text reports of all of the above, and the `run_command` dispatcher. |

## Examples

Human-readable sizes and digests:

```python
from cray.report import format_bytes, format_content_size, truncate_digest

format_bytes(1536)                    # "1.50 KB"
format_content_size(1536, "gzip")     # "1.50 KB(gzip)"
format_content_size(512, "")          # "512 B(-)"
truncate_digest("sha256:0123456789abcdef0123", 19)  # first 19 characters
```

Layer chain IDs from an image config's `diff_ids`; the base layer's chain
ID is its own diff ID, and each further one is `sha256:` followed by the
SHA-256 of the previous chain ID, a space, and the next diff ID:

```python
from cray.images import calculate_chain_ids, compression_type, parse_diff_ids

chain_ids = calculate_chain_ids(parse_diff_ids(config_bytes))
compression_type("application/vnd.oci.image.layer.v1.tar+zstd")  # "zstd"
```

Mount destinations are compared with `/var/run` treated as `/run`:

```python
from cray.mounts import normalize_run_alias, same_container_destination

normalize_run_alias("/var/run/secrets/kubernetes.io/serviceaccount")
# "/run/secrets/kubernetes.io/serviceaccount"
same_container_destination("/var/run/foo", "/run/foo")  # True
```

Merged mounts carry an origin (`cri`, `runtime-default`, `live-extra`) and
a state (`declared+live`, `declared-only`, `live-only`), ordered by origin
and then by destination, source and type:

```python
from cray.mounts import merge_mount_sources

merged = merge_mount_sources(cri_mounts, spec_mounts, live_mounts)
```

Shim socket addresses follow containerd's convention when no bundle file
names one:

```python
from cray.bundles import compute_shim_socket_address, resolve_shim_socket_address

compute_shim_socket_address("k8s.io", "container-id")
# "unix:///run/containerd/s/<sha256 of the bundle path>"
socket = resolve_shim_socket_address("k8s.io", bundle_dir, "container-id")
socket.address, socket.source  # source is "bundle", "sandbox-bundle" or "inferred"
```

## Reports

`cray.report.run_command(runtime, args)` takes an object providing
`connect`, `close` and the query methods it needs (`list_containers`,
`list_images`, `list_pods`, `get_container_runtime_info`,
`get_container_processes`, `get_container_top`, `get_container_mounts`,
`get_image`, `get_image_config_info`, `get_image_layers`) and a list such
as `["list-containers"]`, `["container-detail", "<id>"]` or
`["image-layers", "<image>", "overlayfs"]`, and returns the matching text
report. It raises `UsageError` for missing or unknown commands and
arguments, and `CommandError` when the runtime object fails. The
individual `render_*` functions format a single kind of object and can be
used on their own.

## What the package does not do

- It does not talk to containerd itself. There is no client for the
  containerd API and no ready-made runtime object for `run_command`; you
  supply one.
- `CRIMetadataSource` needs a transport object with `container_status` and
  `pod_sandbox_status` methods; no gRPC transport is included.
- It does not read `/proc`, cgroups or live mount tables; process lists,
  cgroup limits, live mounts and interface counters must be passed in.
- There is no command-line program and no interactive terminal interface.

## Tests

The test suite uses pytest and lives in `tests/`.