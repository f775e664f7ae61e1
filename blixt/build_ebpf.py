"""Building the eBPF half of the dataplane with the nightly toolchain."""

from __future__ import annotations

import subprocess
from enum import Enum
from pathlib import Path

EBPF_DIR = Path("dataplane/ebpf")
"""Directory holding the eBPF crate, relative to the repository root."""


class Architecture(Enum):
    """The BPF target triple, which fixes the byte order of the program."""

    BPF_EL = "bpfel-unknown-none"
    BPF_EB = "bpfeb-unknown-none"

    @classmethod
    def parse(cls, value):
        """Return the architecture named by a target triple.

        Raises ValueError for an unknown triple.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError("invalid target") from None

    def __str__(self) -> str:
        return self.value


def build_ebpf(target=Architecture.BPF_EL, release=False) -> None:
    """Compile the eBPF programs for ``target``.

    Raises subprocess.CalledProcessError when the build fails and OSError
    when cargo cannot be started.
    """
    arch = Architecture.parse(target)
    args = [
        "cargo",
        "+nightly",
        "build",
        "--verbose",
        f"--target={arch}",
        "-Z",
        "build-std=core",
    ]
    if release:
        args.append("--release")
    subprocess.run(args, cwd=EBPF_DIR, check=True)