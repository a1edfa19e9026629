"""
Toolchain — resolve a cell's (os_family, arch) to ordered setup commands.

The resolver only returns data.  Installation happens later when the
executor runs the commands inside the job's sandbox.
"""
from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from wheel_matrix.core.axes import MatrixCell
from wheel_matrix.core.errors import ToolchainResolutionError

logger = logging.getLogger(__name__)

RUSTUP_INIT_URL = "https://sh.rustup.rs"


@dataclass(frozen=True)
class Command:
    """An external command as data: program, args, environment deltas."""

    program: str
    args: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    @classmethod
    def parse(cls, text: str, env: Optional[Mapping[str, str]] = None) -> "Command":
        parts = shlex.split(text)
        if not parts:
            raise ValueError("empty command")
        return cls(program=parts[0], args=tuple(parts[1:]), env=env or {})

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]

    def display(self) -> str:
        return " ".join(shlex.quote(a) for a in self.argv)


@dataclass(frozen=True)
class ToolchainEntry:
    """
    One row of the toolchain table.

    installer:
        ``rustup-init`` bootstraps rustup inside the sandbox (linux
        containers); ``rustup`` assumes it is already on the host.
    host_triple:
        When set the toolchain identity is ``<version>-<host_triple>``,
        a separate toolchain from the host default.
    targets:
        Extra compilation targets, one ``rustup target add`` each.
    """

    os_family: str
    arch: str
    installer: str = "rustup"
    host_triple: Optional[str] = None
    targets: Tuple[str, ...] = ()
    path_entries: Tuple[str, ...] = ("$HOME/.cargo/bin",)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.os_family, self.arch)


@dataclass(frozen=True)
class ToolchainSpec:
    platform_key: Tuple[str, str]
    identity: str
    steps: Tuple[Command, ...]
    path_entries: Tuple[str, ...] = ()

    @property
    def targets(self) -> Tuple[str, ...]:
        """Architectures targeted by ``rustup target add`` steps."""
        return tuple(
            c.args[2] for c in self.steps
            if c.program == "rustup" and c.args[:2] == ("target", "add")
        )


DEFAULT_TOOLCHAIN_TABLE: Tuple[ToolchainEntry, ...] = (
    ToolchainEntry(
        os_family="linux",
        arch="x86_64",
        installer="rustup-init",
    ),
    ToolchainEntry(
        os_family="macos",
        arch="universal2",
        targets=("aarch64-apple-darwin", "x86_64-apple-darwin"),
    ),
    ToolchainEntry(
        os_family="macos",
        arch="arm64",
        targets=("aarch64-apple-darwin",),
    ),
    ToolchainEntry(
        os_family="macos",
        arch="x86_64",
        targets=("x86_64-apple-darwin",),
    ),
    ToolchainEntry(
        os_family="windows",
        arch="AMD64",
        path_entries=("$UserProfile\\.cargo\\bin",),
    ),
    ToolchainEntry(
        os_family="windows",
        arch="x86",
        host_triple="i686-pc-windows-msvc",
        path_entries=("$UserProfile\\.cargo\\bin",),
    ),
)


class ToolchainResolver:
    """Maps cells to pinned, per-platform toolchain setup sequences."""

    def __init__(self, version: str, table: Iterable[ToolchainEntry] = DEFAULT_TOOLCHAIN_TABLE):
        self.version = version
        self._table: Dict[Tuple[str, str], ToolchainEntry] = {}
        for entry in table:
            self._table[entry.key] = entry

    @property
    def platforms(self) -> Sequence[Tuple[str, str]]:
        return sorted(self._table)

    def resolve(self, cell: MatrixCell) -> ToolchainSpec:
        os_family = cell.lookup("os_family") or ""
        arch = cell.lookup("arch") or ""
        entry = self._table.get((os_family, arch))
        if entry is None:
            raise ToolchainResolutionError(os_family, arch)

        identity = self.version
        if entry.host_triple:
            identity = f"{self.version}-{entry.host_triple}"

        steps: List[Command] = []
        if entry.installer == "rustup-init":
            steps.append(Command(
                "sh",
                ("-c", f"curl {RUSTUP_INIT_URL} -sSf | sh -s -- "
                       f"--default-toolchain={identity} --profile=minimal -y"),
            ))
        elif entry.host_triple:
            steps.append(Command("rustup", ("toolchain", "install", identity)))

        steps.append(Command("rustup", ("default", identity)))
        if entry.host_triple:
            steps.append(Command("rustup", ("override", "set", identity)))
        for target in entry.targets:
            steps.append(Command("rustup", ("target", "add", target)))
        steps.append(Command("rustup", ("show",)))

        return ToolchainSpec(
            platform_key=entry.key,
            identity=identity,
            steps=tuple(steps),
            path_entries=entry.path_entries,
        )
