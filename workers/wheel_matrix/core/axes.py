"""
Axes — matrix data model: axes, overrides, cells and derived attributes.

Everything here is immutable.  Derived attributes are a pure function of
a cell's axis values plus the extra keys an include pinned on it, so a
cell can always be rebuilt from its inputs.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional, Sequence, Tuple

from wheel_matrix.core.errors import MatrixDefinitionError


# ── Platform vocabulary ──────────────────────────────────────────────────────

OS_FAMILIES: Dict[str, str] = {
    "ubuntu": "linux",
    "linux": "linux",
    "manylinux": "linux",
    "macos": "macos",
    "darwin": "macos",
    "osx": "macos",
    "windows": "windows",
    "win": "windows",
}

DEFAULT_ARCH: Dict[str, str] = {
    "linux": "x86_64",
    "macos": "universal2",
    "windows": "AMD64",
}

DEFAULT_ARCH_32BIT: Dict[str, str] = {
    "linux": "i686",
    "windows": "x86",
}

ARCHS_32BIT = frozenset({"x86", "i686", "win32"})

# Short labels used in the platform identifier (macos-universal, windows-amd64)
ARCH_LABELS: Dict[str, str] = {
    "universal2": "universal",
    "AMD64": "amd64",
    "win32": "x86",
}

DERIVED_ATTRIBUTES = ("os_family", "arch", "variant", "platform", "runs_on")


def derive_attributes(
    axis_values: Mapping[str, str],
    pinned: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Compute derived attributes for a cell.

    ``pinned`` holds the extra keys of the include that created the cell;
    they take part in derivation (an include pinning ``variant=32bit``
    selects the 32-bit default arch) and are carried verbatim.
    """
    pinned = dict(pinned or {})
    merged = {**axis_values, **pinned}
    attrs: Dict[str, str] = {}

    os_name = merged.get("os")
    if os_name is None:
        attrs.update(pinned)
        return attrs

    os_family = merged.get("os_family") or OS_FAMILIES.get(os_name.lower(), os_name.lower())

    arch = merged.get("arch")
    if arch is None:
        if merged.get("variant") == "32bit":
            arch = DEFAULT_ARCH_32BIT.get(os_family, "x86")
        else:
            arch = DEFAULT_ARCH.get(os_family, "x86_64")

    variant = merged.get("variant") or ("32bit" if arch in ARCHS_32BIT else "64bit")
    label = ARCH_LABELS.get(arch, arch.lower())

    attrs["os_family"] = os_family
    attrs["arch"] = arch
    attrs["variant"] = variant
    attrs["platform"] = f"{os_family}-{label}"
    attrs["runs_on"] = f"{os_name}-latest"
    attrs.update(pinned)
    return attrs


def make_cell_id(axis_values: Mapping[str, str]) -> str:
    """Deterministic id from the sorted axis-value pairs."""
    return ",".join(f"{k}={axis_values[k]}" for k in sorted(axis_values))


def slugify(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", text.replace("=", "-")).strip("_")


def cell_key(cell_id: str) -> str:
    """
    Directory name for a cell: readable slug plus a short digest of the
    full id, so ids that slugify alike (``a b`` / ``a_b``) stay apart.
    """
    digest = hashlib.sha256(cell_id.encode("utf-8")).hexdigest()[:8]
    return f"{slugify(cell_id) or 'cell'}-{digest}"


# ── Axes ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Axis:
    """A named dimension with an ordered, non-empty set of unique values."""

    name: str
    values: Tuple[str, ...]

    def __post_init__(self):
        if not self.name:
            raise MatrixDefinitionError("axis name must be non-empty")
        if not self.values:
            raise MatrixDefinitionError(f"axis '{self.name}' has no values")
        if len(set(self.values)) != len(self.values):
            raise MatrixDefinitionError(f"axis '{self.name}' has duplicate values")


@dataclass(frozen=True)
class AxisSet:
    axes: Tuple[Axis, ...] = ()

    def __post_init__(self):
        names = [a.name for a in self.axes]
        if len(set(names)) != len(names):
            raise MatrixDefinitionError(f"duplicate axis names in {names}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Sequence]) -> "AxisSet":
        """Build from ``{name: [values]}``; values are normalised to strings."""
        return cls(tuple(
            Axis(name=name, values=tuple(str(v) for v in values))
            for name, values in data.items()
        ))

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(a.name for a in self.axes)

    def __iter__(self) -> Iterator[Axis]:
        return iter(self.axes)

    def __len__(self) -> int:
        return len(self.axes)


# ── Overrides ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Override:
    """
    Partial key/value map used by include and exclude rules.

    For includes, keys naming a declared axis are match keys and every
    other key is an extra attribute.
    """

    values: Mapping[str, str]

    def __post_init__(self):
        if not self.values:
            raise MatrixDefinitionError("override must specify at least one key")
        object.__setattr__(
            self, "values",
            MappingProxyType({k: str(v) for k, v in self.values.items()}),
        )

    def split(self, axis_names: Sequence[str]) -> Tuple[Dict[str, str], Dict[str, str]]:
        """Return (axis_values, extra_attributes)."""
        axis_part = {k: v for k, v in self.values.items() if k in axis_names}
        extra = {k: v for k, v in self.values.items() if k not in axis_names}
        return axis_part, extra


# ── Cells ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MatrixCell:
    """One concrete combination of axis values.  Never mutated."""

    id: str
    axis_values: Mapping[str, str]
    attributes: Mapping[str, str] = field(default_factory=dict)
    synthesized: bool = False

    def __post_init__(self):
        object.__setattr__(self, "axis_values", MappingProxyType(dict(self.axis_values)))
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @classmethod
    def build(
        cls,
        axis_values: Mapping[str, str],
        pinned: Optional[Mapping[str, str]] = None,
        synthesized: bool = False,
    ) -> "MatrixCell":
        return cls(
            id=make_cell_id(axis_values),
            axis_values=axis_values,
            attributes=derive_attributes(axis_values, pinned),
            synthesized=synthesized,
        )

    @property
    def slug(self) -> str:
        return cell_key(self.id)

    def lookup(self, key: str) -> Optional[str]:
        """Axis values first, then attributes; None when the cell lacks the key."""
        if key in self.axis_values:
            return self.axis_values[key]
        return self.attributes.get(key)

    def context(self) -> Dict[str, str]:
        """Flat view of attributes and axis values (axis values win)."""
        return {**self.attributes, **self.axis_values}

    def with_attributes(self, extra: Mapping[str, str]) -> "MatrixCell":
        """Return a copy carrying ``extra`` merged into its attributes."""
        return MatrixCell(
            id=self.id,
            axis_values=self.axis_values,
            attributes={**self.attributes, **extra},
            synthesized=self.synthesized,
        )
