import hashlib

import pytest

from cray.bundles import (
    DEFAULT_RUNC_ROOT,
    RUNTIME_V2_STATE_BASE,
    compute_shim_socket_address,
    infer_cgroup_driver,
    is_runc_runtime_name,
    is_shim_process,
    read_address_file,
    read_bootstrap_address,
    resolve_oci_bundle_dir,
    resolve_oci_state_dir,
    resolve_runc_root,
    resolve_runtime_binary_path,
    resolve_shim_socket_address,
)
from cray.containers import ContainerInfo, RuntimeInfo


def test_resolve_shim_socket_address_from_bundle(tmp_path):
    bundle_dir = tmp_path / "bundle"
    bundle_dir.mkdir()
    (bundle_dir / "bootstrap.json").write_text(
        '{"version":2,"address":"unix:///run/containerd/s/abc","protocol":"ttrpc"}'
    )
    address, sandbox_id, sandbox_bundle_dir, source = resolve_shim_socket_address(
        "k8s.io", str(bundle_dir), "container-id", ""
    )
    assert address == "ttrpc+unix:///run/containerd/s/abc"
    assert sandbox_id == ""
    assert sandbox_bundle_dir == ""
    assert source == "bundle"


def test_resolve_shim_socket_address_from_sandbox_bundle(tmp_path):
    bundle_dir = tmp_path / "container-id"
    sandbox_dir = tmp_path / "sandbox-id"
    bundle_dir.mkdir()
    sandbox_dir.mkdir()
    (bundle_dir / "sandbox").write_text("sandbox-id\n")
    (sandbox_dir / "address").write_text("unix:///run/containerd/s/fallback\n")
    address, sandbox_id, resolved_dir, source = resolve_shim_socket_address(
        "k8s.io", str(bundle_dir), "container-id", ""
    )
    assert address == "unix:///run/containerd/s/fallback"
    assert sandbox_id == "sandbox-id"
    assert resolved_dir == str(sandbox_dir)
    assert source == "sandbox-bundle"


def test_resolve_shim_socket_address_uses_sandbox_id_hint(tmp_path):
    bundle_dir = tmp_path / "container-id"
    sandbox_dir = tmp_path / "sandbox-id"
    bundle_dir.mkdir()
    sandbox_dir.mkdir()
    (sandbox_dir / "address").write_text("unix:///run/containerd/s/from-hint\n")
    result = resolve_shim_socket_address("k8s.io", str(bundle_dir), "container-id", "sandbox-id")
    assert result.address == "unix:///run/containerd/s/from-hint"
    assert result.sandbox_id == "sandbox-id"
    assert result.sandbox_bundle_dir == str(sandbox_dir)
    assert result.source == "sandbox-bundle"


def test_resolve_shim_socket_address_inferred_without_files(tmp_path):
    result = resolve_shim_socket_address("k8s.io", str(tmp_path / "missing"), "container-id")
    assert result.address == compute_shim_socket_address("k8s.io", "container-id")
    assert result.source == "inferred"
    assert result.sandbox_id == ""


def test_resolve_shim_socket_address_inferred_from_sandbox_hint(tmp_path):
    bundle_dir = tmp_path / "container-id"
    bundle_dir.mkdir()
    result = resolve_shim_socket_address("k8s.io", str(bundle_dir), "container-id", "sandbox-id")
    assert result.address == compute_shim_socket_address("k8s.io", "sandbox-id")
    assert result.sandbox_bundle_dir == str(tmp_path / "sandbox-id")
    assert result.source == "inferred"


def test_resolve_oci_bundle_dir_uses_task_state_path():
    resolved, source = resolve_oci_bundle_dir("k8s.io", "container-id")
    assert resolved == RUNTIME_V2_STATE_BASE + "/k8s.io/container-id"
    assert source == "convention"


def test_resolve_oci_state_dir_uses_runtime_options_root():
    info = ContainerInfo(
        id="container-id",
        runtime=RuntimeInfo(name="io.containerd.runc.v2", options={"root": "/run/custom-runc"}),
    )
    resolved, source = resolve_oci_state_dir(info, "k8s.io")
    assert resolved == "/run/custom-runc/k8s.io/container-id"
    assert source == "runtime-options"


def test_resolve_oci_state_dir_uses_default_runc_root():
    info = ContainerInfo(id="container-id", runtime=RuntimeInfo(name="io.containerd.runc.v2"))
    resolved, source = resolve_oci_state_dir(info, "k8s.io")
    assert resolved == DEFAULT_RUNC_ROOT + "/k8s.io/container-id"
    assert source == "runtime-default"


def test_resolve_oci_state_dir_falls_back_to_convention():
    info = ContainerInfo(id="container-id", runtime=RuntimeInfo(name="io.containerd.kata.v2"))
    resolved, source = resolve_oci_state_dir(info, "k8s.io")
    assert resolved == RUNTIME_V2_STATE_BASE + "/k8s.io/container-id"
    assert source == "convention"


def test_resolve_runc_root_accepts_camel_case_option():
    info = RuntimeInfo(name="io.containerd.kata.v2", options={"Root": "/run/other"})
    assert resolve_runc_root(info) == ("/run/other", "runtime-options")
    assert resolve_runc_root(RuntimeInfo(name="io.containerd.kata.v2")) == ("", "")


def test_resolve_runtime_binary_path_prefers_runtime_options_binary_name(tmp_path):
    (tmp_path / "shim-binary-path").write_text("/usr/bin/containerd-shim-runc-v2\n")
    info = RuntimeInfo(name="io.containerd.runc.v2", options={"binary_name": "/usr/bin/runc"})
    binary, source = resolve_runtime_binary_path(str(tmp_path), info, "")
    assert binary == "/usr/bin/runc"
    assert source == "runtime-options"


def test_resolve_runtime_binary_path_reads_bundle_file(tmp_path):
    (tmp_path / "shim-binary-path").write_text("/usr/bin/containerd-shim-runc-v2\n")
    binary, source = resolve_runtime_binary_path(
        str(tmp_path), RuntimeInfo(name="io.containerd.runc.v2"), "/proc/shim"
    )
    assert binary == "/usr/bin/containerd-shim-runc-v2"
    assert source == "bundle"


def test_resolve_runtime_binary_path_fallbacks(tmp_path):
    missing = str(tmp_path / "missing")
    assert resolve_runtime_binary_path(
        missing, RuntimeInfo(name="io.containerd.runc.v2"), "/usr/bin/containerd-shim-runc-v2"
    ) == ("/usr/bin/containerd-shim-runc-v2", "procfs")
    assert resolve_runtime_binary_path(missing, RuntimeInfo(name="/opt/bin/shim"), "") == (
        "/opt/bin/shim",
        "containerd",
    )
    assert resolve_runtime_binary_path(missing, RuntimeInfo(name="io.containerd.runc.v2"), "") == (
        "containerd-shim-runc-v2",
        "derived",
    )
    assert resolve_runtime_binary_path(missing, RuntimeInfo(name="runc"), "") == ("runc", "derived")


def test_compute_shim_socket_address():
    address = compute_shim_socket_address("k8s.io", "container-id")
    path = RUNTIME_V2_STATE_BASE + "/k8s.io/container-id"
    expected = "unix:///run/containerd/s/" + hashlib.sha256(path.encode()).hexdigest()
    assert address == expected


def test_is_shim_process():
    cmdline = ["/usr/bin/containerd-shim-runc-v2", "-namespace", "k8s.io"]
    assert is_shim_process("/usr/bin/containerd-shim-runc-v2", [])
    assert is_shim_process("", cmdline)
    assert not is_shim_process("/usr/bin/containerd", ["/usr/bin/containerd"])


def test_is_runc_runtime_name():
    assert is_runc_runtime_name("io.containerd.runc.v2")
    assert is_runc_runtime_name("runc")
    assert not is_runc_runtime_name("io.containerd.kata.v2")


def test_infer_cgroup_driver():
    assert infer_cgroup_driver("") == ""
    assert infer_cgroup_driver("kubepods-besteffort.slice:cri-containerd:abc") == "systemd"
    assert infer_cgroup_driver("/kubepods/besteffort/pod1/abc") == "cgroupfs"


def test_read_bootstrap_address_without_protocol(tmp_path):
    path = tmp_path / "bootstrap.json"
    path.write_text('{"address":"unix:///run/containerd/s/abc"}')
    assert read_bootstrap_address(str(path)) == "unix:///run/containerd/s/abc"


def test_read_bootstrap_address_errors(tmp_path):
    missing_address = tmp_path / "bootstrap.json"
    missing_address.write_text('{"protocol":"ttrpc"}')
    with pytest.raises(ValueError):
        read_bootstrap_address(str(missing_address))
    broken = tmp_path / "broken.json"
    broken.write_text("{")
    with pytest.raises(ValueError):
        read_bootstrap_address(str(broken))
    with pytest.raises(OSError):
        read_bootstrap_address(str(tmp_path / "absent.json"))


def test_read_address_file(tmp_path):
    path = tmp_path / "address"
    path.write_text("  unix:///run/containerd/s/abc \n")
    assert read_address_file(str(path)) == "unix:///run/containerd/s/abc"
    empty = tmp_path / "empty"
    empty.write_text("\n")
    with pytest.raises(ValueError):
        read_address_file(str(empty))
    with pytest.raises(OSError):
        read_address_file(str(tmp_path / "absent"))