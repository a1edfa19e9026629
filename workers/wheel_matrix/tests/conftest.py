"""
Shared pytest fixtures for wheel_matrix tests.

No fixture runs a real build: commands go through ``ScriptedRunner``,
which records every call and fakes the outcome (exit code, timeout, or
wheels written into the job's output directory).  Wheels are built
on the fly with ``zipfile`` using fixed timestamps, so identical inputs
give byte-identical archives.
"""
import threading
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from wheel_matrix.core.executor import CommandResult
from wheel_matrix.core.jobs import JobPlanner
from wheel_matrix.io.loader import parse_definition
from wheel_matrix.policy.profile import Profile
from wheel_matrix.runner import expand_definition

REPO_ROOT = Path(__file__).resolve().parents[3]
SAMPLE_DEFINITION = REPO_ROOT / "definitions" / "wheels.yaml"

FIXED_DATE = (2023, 11, 16, 0, 0, 0)

PLATFORM_TAGS = {
    "linux": "manylinux2014_x86_64",
    "macos": "macosx_10_12_universal2",
    "windows": "win_amd64",
}


# ── Wheel factory ────────────────────────────────────────────────────────────

def make_wheel(
    directory: Path,
    filename: str,
    metadata: bool = True,
    payload: bytes = b"",
    members: Optional[Dict[str, bytes]] = None,
) -> Path:
    """Write a minimal wheel archive and return its path."""
    directory.mkdir(parents=True, exist_ok=True)
    dist, version = filename.split("-")[:2]
    dist_info = f"{dist}-{version}.dist-info"

    entries: Dict[str, bytes] = {f"{dist}/__init__.py": payload}
    if metadata:
        entries[f"{dist_info}/METADATA"] = (
            f"Metadata-Version: 2.1\nName: {dist}\nVersion: {version}\n".encode()
        )
        entries[f"{dist_info}/WHEEL"] = b"Wheel-Version: 1.0\nRoot-Is-Purelib: false\n"
    entries.update(members or {})

    path = directory / filename
    with zipfile.ZipFile(path, "w") as zf:
        for name in sorted(entries):
            zf.writestr(zipfile.ZipInfo(name, date_time=FIXED_DATE), entries[name])
    return path


def wheel_name(os_family: str, python_version: str = "8", dist: str = "demo") -> str:
    return f"{dist}-1.0-cp3{python_version}-abi3-{PLATFORM_TAGS[os_family]}.whl"


def corrupt_member(path: Path, member: str) -> Path:
    """
    Rewrite the wheel with ``member`` deflated, then overwrite its
    compressed bytes so that inflating it fails.  The central directory
    stays intact: the file still opens as a zip.
    """
    with zipfile.ZipFile(path) as zf:
        entries = [(info, zf.read(info)) for info in zf.infolist()]
    with zipfile.ZipFile(path, "w") as zf:
        for info, data in entries:
            if info.filename == member:
                info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, data)
    with zipfile.ZipFile(path) as zf:
        info = zf.getinfo(member)

    raw = bytearray(path.read_bytes())
    offset = info.header_offset
    name_len = int.from_bytes(raw[offset + 26:offset + 28], "little")
    extra_len = int.from_bytes(raw[offset + 28:offset + 30], "little")
    start = offset + 30 + name_len + extra_len
    raw[start:start + info.compress_size] = b"\xff" * info.compress_size
    path.write_bytes(bytes(raw))
    return path


# ── Scripted command runner ──────────────────────────────────────────────────

Handler = Callable[[List[str], Path, Dict[str, str]], CommandResult]


class ScriptedRunner:
    """
    CommandRunner stand-in.

    ``handlers`` maps a substring of the joined argv to a handler; the
    first match wins.  Unmatched commands succeed with no output.
    """

    def __init__(self, handlers: Optional[Sequence[Tuple[str, Handler]]] = None):
        self.handlers = list(handlers or [])
        self.calls: List[Tuple[List[str], Dict[str, str]]] = []
        self._lock = threading.Lock()

    def run(self, argv, cwd, env, timeout) -> CommandResult:
        argv = list(argv)
        with self._lock:
            self.calls.append((argv, dict(env)))
        joined = " ".join(argv)
        for needle, handler in self.handlers:
            if needle in joined:
                return handler(argv, Path(cwd), dict(env))
        return CommandResult(exit_code=0)

    def commands(self, job_id: Optional[str] = None) -> List[str]:
        return [
            " ".join(argv) for argv, env in self.calls
            if job_id is None or env.get("WHEEL_MATRIX_JOB_ID") == job_id
        ]


def fail(exit_code: int = 1, stderr: str = "error: build failed") -> Handler:
    def _handler(argv, cwd, env):
        return CommandResult(exit_code=exit_code, stdout="building...\n", stderr=stderr)
    return _handler


def time_out() -> Handler:
    def _handler(argv, cwd, env):
        return CommandResult(exit_code=-1, stderr="TIMEOUT after 1.0s", timed_out=True)
    return _handler


def produce_wheel() -> Handler:
    """
    Handler for ``build-wheel <os_family> <python-version> [<dist>]``:
    writes one valid wheel into the job's output directory.
    """
    def _handler(argv, cwd, env):
        os_family, python_version = argv[1], argv[2]
        dist = argv[3] if len(argv) > 3 else "demo"
        out = Path(env["WHEEL_MATRIX_OUTPUT_DIR"])
        make_wheel(out, wheel_name(os_family, python_version, dist), payload=dist.encode())
        return CommandResult(exit_code=0, stdout=f"built {dist}\n")
    return _handler


def cibuildwheel(win32_tag: str = "win32") -> Handler:
    """
    Handler for the sample definition's ``cibuildwheel`` steps: the wheel
    tag follows CIBW_BUILD / CIBW_PLATFORM from the step environment.
    32-bit builds write ``win32_tag``.
    """
    def _handler(argv, cwd, env):
        if env.get("CIBW_BUILD", "").endswith("-win32"):
            tag = win32_tag
        else:
            tag = PLATFORM_TAGS[env["CIBW_PLATFORM"]]
        out = Path(env["WHEEL_MATRIX_OUTPUT_DIR"])
        make_wheel(out, f"demo-1.0-cp38-abi3-{tag}.whl", payload=tag.encode())
        return CommandResult(exit_code=0)
    return _handler


# ── Definitions ──────────────────────────────────────────────────────────────

def base_definition(**overrides) -> dict:
    """Three-OS matrix whose build step is served by ``produce_wheel``."""
    data = {
        "name": "demo",
        "axes": {"os": ["ubuntu", "macos", "windows"], "python-version": ["8"]},
        "setup": [{"name": "deps", "run": "pip install cibuildwheel"}],
        "toolchain": {"version": "nightly-2023-11-16", "if": "matrix.os != 'ubuntu'"},
        "build": [
            {"name": "build", "run": "build-wheel {os_family} {python-version}"},
        ],
    }
    data.update(overrides)
    return data


@pytest.fixture
def profile():
    return Profile.v1()


@pytest.fixture
def definition():
    return parse_definition(base_definition())


@pytest.fixture
def plan(definition, profile):
    """JobPlan for the base definition, keyed by job id."""
    planned = JobPlanner(definition, profile).plan(expand_definition(definition))
    return planned


@pytest.fixture
def jobs(plan):
    return {job.job_id: job for job in plan.jobs}


@pytest.fixture
def runner():
    return ScriptedRunner([("build-wheel", produce_wheel())])


@pytest.fixture
def sample_definition_path():
    return SAMPLE_DEFINITION


# ── Redis stand-in ───────────────────────────────────────────────────────────

class FakeRedis:
    """The handful of Redis list / string commands the service uses."""

    def __init__(self):
        self.lists: Dict[str, List[str]] = {}
        self.values: Dict[str, str] = {}

    def rpush(self, key, *values):
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    def blpop(self, keys, timeout=0):
        for key in keys:
            items = self.lists.get(key)
            if items:
                return key, items.pop(0)
        return None

    def set(self, key, value):
        self.values[key] = value
        return True

    def get(self, key):
        return self.values.get(key)

    def ping(self):
        return True


@pytest.fixture
def fake_redis():
    return FakeRedis()
