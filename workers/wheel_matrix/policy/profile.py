"""
Profile — build policy knobs for a matrix run.

The profile encapsulates toolchain pinning, artifact discovery and
timeouts so that the core contains no opinions.  Moving to a new
toolchain is a profile change, not a code change.
"""
from dataclasses import dataclass
from typing import Tuple

from wheel_matrix.core.toolchain import DEFAULT_TOOLCHAIN_TABLE, ToolchainEntry


@dataclass(frozen=True)
class Profile:
    """Describes how jobs are resolved, executed and validated."""

    # Identity
    profile_id: str

    # Toolchain
    toolchain_version: str
    toolchain_table: Tuple[ToolchainEntry, ...] = DEFAULT_TOOLCHAIN_TABLE

    # Artifact discovery / validation
    artifact_patterns: Tuple[str, ...] = ("*.whl",)
    require_metadata: bool = True
    check_elf_extensions: bool = True

    # Execution
    job_timeout_seconds: float = 3600.0
    stderr_tail_chars: int = 2000

    @classmethod
    def v1(cls) -> "Profile":
        """The locked v1 profile: rust nightly wheels via cibuildwheel."""
        return cls(
            profile_id="wheels-rust-nightly-v1",
            toolchain_version="nightly-2023-11-16",
        )
