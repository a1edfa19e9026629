"""
test_loader — reading definition files, including the shipped sample.
"""
import json

import pytest

from wheel_matrix.core.errors import MatrixDefinitionError
from wheel_matrix.core.jobs import JobPlanner
from wheel_matrix.io.loader import definition_matrix, load_definition, parse_definition
from wheel_matrix.policy.verdict import StepPhase
from wheel_matrix.runner import expand_definition

SAMPLE_MACOS = "os=macos,python-version=8,variant=64bit"
SAMPLE_UBUNTU = "os=ubuntu,python-version=8,variant=64bit"
SAMPLE_WIN64 = "os=windows,python-version=8,variant=64bit"
SAMPLE_WIN32 = "os=windows,python-version=8,variant=32bit"


class TestParse:

    def test_scalars_become_strings(self):
        definition = parse_definition({
            "name": "d",
            "axes": {"python-version": [8, 9], "debug": [True]},
            "include": [{"python-version": 8, "abi3": True}],
        })
        assert definition.axes == {"python-version": ["8", "9"], "debug": ["true"]}
        assert definition.include == [{"python-version": "8", "abi3": "true"}]

    def test_if_alias(self):
        definition = parse_definition({"name": "d", "axes": {"os": ["ubuntu"]}, "if": "os == 'ubuntu'"})
        assert definition.if_ == "os == 'ubuntu'"

    def test_unknown_key_rejected(self):
        with pytest.raises(MatrixDefinitionError):
            parse_definition({"name": "d", "axes": {}, "strategy": {}})

    def test_empty_run_rejected(self):
        with pytest.raises(MatrixDefinitionError):
            parse_definition({"name": "d", "axes": {}, "build": [{"name": "b", "run": " "}]})

    def test_non_mapping_rejected(self):
        with pytest.raises(MatrixDefinitionError):
            parse_definition(["not", "a", "mapping"])

    def test_definition_matrix(self):
        definition = parse_definition({
            "name": "d",
            "axes": {"os": ["ubuntu", "macos"]},
            "exclude": [{"os": "macos"}],
        })
        axes, includes, excludes = definition_matrix(definition)
        assert axes.names == ("os",)
        assert includes == []
        assert dict(excludes[0].values) == {"os": "macos"}


class TestLoad:

    def test_json(self, tmp_path):
        path = tmp_path / "matrix.json"
        path.write_text(json.dumps({"name": "j", "axes": {"os": ["ubuntu"]}}))
        assert load_definition(path).name == "j"

    def test_missing_file(self, tmp_path):
        with pytest.raises(MatrixDefinitionError, match="not found"):
            load_definition(tmp_path / "missing.yaml")

    def test_bad_yaml(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(MatrixDefinitionError, match="cannot parse"):
            load_definition(path)


class TestSampleDefinition:
    """The shipped wheels.yaml: three 64-bit OS cells plus a 32-bit windows cell."""

    @pytest.fixture
    def sample(self, sample_definition_path):
        return load_definition(sample_definition_path)

    @pytest.fixture
    def sample_jobs(self, sample, profile):
        plan = JobPlanner(sample, profile).plan(expand_definition(sample))
        assert plan.results == []
        return {j.job_id: j for j in plan.jobs}

    def test_cells(self, sample):
        cells = {c.id: c for c in expand_definition(sample)}
        assert sorted(cells) == [SAMPLE_MACOS, SAMPLE_UBUNTU, SAMPLE_WIN32, SAMPLE_WIN64]
        assert cells[SAMPLE_UBUNTU].attributes["cibw_platform"] == "linux"
        assert cells[SAMPLE_WIN64].attributes["ls"] == "cmd /c dir"
        assert cells[SAMPLE_MACOS].attributes["platform"] == "macos-universal"

        win32 = cells[SAMPLE_WIN32]
        assert win32.synthesized
        assert win32.attributes["arch"] == "x86"
        assert win32.attributes["platform"] == "windows-x86"
        assert win32.attributes["ls"] == "cmd /c dir"

    def test_display_names(self, sample_jobs):
        assert sample_jobs[SAMPLE_MACOS].display_name == "Build wheels py3.8 on macos-universal"
        assert sample_jobs[SAMPLE_WIN32].display_name == "Build wheels py3.8 on windows-x86"

    def test_toolchains(self, sample_jobs):
        assert sample_jobs[SAMPLE_UBUNTU].toolchain is None
        assert sample_jobs[SAMPLE_MACOS].toolchain.targets == ("aarch64-apple-darwin", "x86_64-apple-darwin")
        assert sample_jobs[SAMPLE_WIN64].toolchain.identity == "nightly-2023-11-16"
        assert sample_jobs[SAMPLE_WIN32].toolchain.identity == "nightly-2023-11-16-i686-pc-windows-msvc"

    def test_build_steps_split_by_variant(self, sample_jobs):
        def _runs(step_name):
            return {
                job_id: [s for s in job.steps if s.name == step_name][0].run
                for job_id, job in sample_jobs.items()
            }

        assert _runs("Build windows 32bit wheels") == {
            SAMPLE_MACOS: False, SAMPLE_UBUNTU: False, SAMPLE_WIN64: False, SAMPLE_WIN32: True,
        }
        assert _runs("Build Wheels") == {
            SAMPLE_MACOS: True, SAMPLE_UBUNTU: True, SAMPLE_WIN64: True, SAMPLE_WIN32: False,
        }

    def test_build_env(self, sample_jobs):
        build = [s for s in sample_jobs[SAMPLE_UBUNTU].steps if s.name == "Build Wheels"][0]
        assert build.phase == StepPhase.BUILD
        assert build.command.env["CIBW_BUILD"] == "cp38-*"
        assert build.command.env["CIBW_PLATFORM"] == "linux"

        win32 = [s for s in sample_jobs[SAMPLE_WIN32].steps if s.name == "Build windows 32bit wheels"][0]
        assert win32.command.env["CIBW_BUILD"] == "cp38-win32"

    def test_listing_command(self, sample_jobs):
        listing = {j: job.steps[-1].command.argv[:-1] for j, job in sample_jobs.items()}
        assert listing[SAMPLE_WIN64] == ["cmd", "/c", "dir"]
        assert listing[SAMPLE_WIN32] == ["cmd", "/c", "dir"]
        assert listing[SAMPLE_UBUNTU] == ["ls", "-lh"]
