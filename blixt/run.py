"""Building and starting the dataplane and control plane binaries."""

from __future__ import annotations

import os
import subprocess

from blixt.build_ebpf import Architecture, build_ebpf

DEFAULT_RUNNER = "sudo -E"
"""The command that wraps the dataplane when it is started."""


def _cargo_build(package: str, release: bool) -> None:
    args = ["cargo", "build", "--package", package]
    if release:
        args.append("--release")
    subprocess.run(args, check=True)


def _profile(release: bool) -> str:
    return "release" if release else "debug"


def _split_runner(runner: str) -> list[str]:
    runner = runner.strip()
    return runner.split(" ") if runner else []


def build_dataplane(release=False) -> None:
    """Build the dataplane's userspace loader."""
    _cargo_build("loader", release)


def build_controlplane(release=False) -> None:
    """Build the control plane."""
    _cargo_build("controlplane", release)


def _exec(args: list[str], rust_log: str) -> None:
    env = {**os.environ, "RUST_LOG": rust_log}
    try:
        os.execvpe(args[0], args, env)
    except OSError as exc:
        raise RuntimeError(f"Failed to run `{' '.join(args)}`") from exc


def run_dataplane(
    bpf_target=Architecture.BPF_EL, release=False, runner=DEFAULT_RUNNER, run_args=()
) -> None:
    """Build the eBPF programs and the loader, then replace this process with it.

    Raises RuntimeError when a build fails or the loader cannot be started.
    """
    try:
        build_ebpf(Architecture.parse(bpf_target), release)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RuntimeError("Error while building eBPF program") from exc
    try:
        build_dataplane(release)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RuntimeError(
            "Error while building dataplane's userspace application"
        ) from exc

    bin_path = f"target/{_profile(release)}/loader"
    args = [*_split_runner(runner), bin_path, *run_args]
    _exec(args, "info,api_server=debug")


def run_controlplane(release=False) -> None:
    """Build the control plane, then replace this process with it.

    Raises RuntimeError when the build fails or the binary cannot be started.
    """
    try:
        build_controlplane(release)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RuntimeError("Error while building controlplane") from exc

    bin_path = f"target/{_profile(release)}/controller"
    _exec([bin_path], "info")