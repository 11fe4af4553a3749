"""Tests for execution plan generation and rendering."""

import os
import shlex
import sys

import pytest

from consensusflow.errors import PlanError
from consensusflow.models import ReferenceGenome, Sample
from consensusflow.plan import (
    STEPS_PER_SAMPLE,
    Command,
    ExecutionPlan,
    Step,
    StepGroup,
    build_plan,
    render_plan,
    write_plan,
)

EXPECTED_STEP_PREFIXES = [
    "Step 1.1: FastQC",
    "Step 1.2: Adapter and quality trimming",
    "Step 2.1: Read alignment",
    "Step 3.1: Conversion of SAM to BAM",
    "Step 3.2: Alignment metrics",
    "Step 3.3: Sorting BAM",
    "Step 3.4: Removing duplicate reads",
    "Step 3.5: Deriving low coverage positions",
    "Step 3.6: Extracting start/end coordinates",
    "Step 3.7: N-masking the reference",
    "Step 4.1: Variant calling",
    "Step 4.2: Indexing VCF",
    "Step 4.3: Consensus genome generation",
]


@pytest.fixture
def genome(tmp_path):
    return ReferenceGenome.from_fasta(tmp_path / "ref.fasta")


def make_samples(tmp_path, names):
    return [
        Sample(name, tmp_path / f"{name}_1.fastq.gz", tmp_path / f"{name}_2.fastq.gz")
        for name in names
    ]


class TestCommand:
    """Test command rendering."""

    def test_tokens_are_quoted(self):
        command = Command(("echo", "a b", "it's"))
        assert command.render() == "echo 'a b' 'it'\"'\"'s'"

    def test_redirects(self, tmp_path):
        command = Command(
            ("tool",), stdin=tmp_path / "in", stdout=tmp_path / "out", stderr=tmp_path / "err"
        )
        assert command.render() == f"tool < {tmp_path}/in > {tmp_path}/out 2> {tmp_path}/err"

    def test_shell_metacharacters_stay_literal(self):
        command = Command(("samtools", "view", "x; rm -rf /"))
        assert shlex.split(command.render()) == ["samtools", "view", "x; rm -rf /"]

    def test_pipe(self):
        step = Step("label", (Command(("a", "1")), Command(("b",))))
        assert step.render() == "a 1 | b"


class TestBuildPlan:
    """Test step ordering and dependency threading."""

    def test_single_sample_has_fifteen_steps(self, genome, workspace, tmp_path, test_config):
        plan = build_plan(genome, make_samples(tmp_path, ["s1"]), workspace, test_config)

        assert len(plan.steps) == 15
        assert [g.name for g in plan.groups] == ["genome", "s1", "summary"]
        assert plan.steps[0].commands[0].argv == (
            "bowtie2-build",
            str(tmp_path / "ref.fasta"),
            str(tmp_path / "ref"),
        )
        assert plan.steps[-1].commands[0].executable == "multiqc"

    def test_fixed_step_order_per_sample(self, genome, workspace, tmp_path, test_config):
        plan = build_plan(genome, make_samples(tmp_path, ["s1", "s2"]), workspace, test_config)

        for group in plan.groups[1:-1]:
            assert len(group.steps) == STEPS_PER_SAMPLE
            for step, prefix in zip(group.steps, EXPECTED_STEP_PREFIXES):
                assert step.label.startswith(prefix)
                assert step.label.endswith(f"for {group.name}")

    def test_sample_groups_follow_resolution_order(self, genome, workspace, tmp_path, test_config):
        plan = build_plan(genome, make_samples(tmp_path, ["zeta", "alpha", "mid"]), workspace, test_config)
        assert [g.name for g in plan.groups] == ["genome", "zeta", "alpha", "mid", "summary"]
        assert len(plan.steps) == 1 + 3 * STEPS_PER_SAMPLE + 1

    def test_each_step_consumes_earlier_outputs(self, genome, workspace, tmp_path, test_config):
        plan = build_plan(genome, make_samples(tmp_path, ["s1"]), workspace, test_config)
        sample_group = plan.groups[1]
        sample = sample_group.sample
        available = {genome.fasta_path, genome.index_base_path, sample.read1_path, sample.read2_path}

        for step in sample_group.steps:
            assert set(step.inputs) <= available, step.label
            available.update(step.outputs)

    def test_dependency_threading(self, genome, workspace, tmp_path, test_config):
        plan = build_plan(genome, make_samples(tmp_path, ["s1"]), workspace, test_config)
        steps = plan.groups[1].steps

        trim, align = steps[1], steps[2]
        assert set(trim.outputs) >= {tmp_path / "s1_P1.fastq", tmp_path / "s1_P2.fastq"}
        assert align.inputs == (tmp_path / "ref", tmp_path / "s1_P1.fastq", tmp_path / "s1_P2.fastq")

        variant_call = steps[10]
        assert tmp_path / "s1.duprem.bam" in variant_call.inputs

        consensus = steps[12]
        assert consensus.commands[0].stdin == tmp_path / "s1_masked.fasta"
        assert consensus.commands[0].stdout == tmp_path / "s1_genome.fa"

    def test_low_coverage_threshold_is_configurable(self, genome, workspace, tmp_path, test_config):
        test_config["low_coverage_threshold"] = 10
        plan = build_plan(genome, make_samples(tmp_path, ["s1"]), workspace, test_config)
        awk = plan.groups[1].steps[7].commands[1]
        assert awk.argv[0] == "awk"
        assert awk.argv[1].startswith("$3 < 10 ")

    def test_default_threshold_is_five(self, genome, workspace, tmp_path):
        plan = build_plan(genome, make_samples(tmp_path, ["s1"]), workspace, {})
        awk = plan.groups[1].steps[7].commands[1]
        assert awk.argv[1].startswith("$3 < 5 ")

    def test_empty_sample_list_rejected(self, genome, workspace):
        with pytest.raises(PlanError):
            build_plan(genome, [], workspace)

    def test_to_dict(self, genome, workspace, tmp_path, test_config):
        plan = build_plan(genome, make_samples(tmp_path, ["s1"]), workspace, test_config)
        data = plan.to_dict()
        assert data["samples"] == ["s1"]
        assert [g["name"] for g in data["groups"]] == ["genome", "s1", "summary"]

    def test_executables(self, genome, workspace, tmp_path, test_config):
        plan = build_plan(genome, make_samples(tmp_path, ["s1"]), workspace, test_config)
        assert plan.executables[:3] == ["bowtie2-build", "fastqc", "fastp"]
        assert "awk" in plan.executables
        assert plan.executables[-1] == "multiqc"


class TestCheckDependencies:
    """Test the dependency audit on hand-built plans."""

    def test_missing_input_detected(self, genome, tmp_path):
        sample = make_samples(tmp_path, ["s1"])[0]
        bad_step = Step("uses nothing produced", (Command(("cat",)),), inputs=(tmp_path / "s1.bam",))
        plan = ExecutionPlan(genome, [sample], [StepGroup("s1", (bad_step,), sample)])

        with pytest.raises(PlanError, match="s1.bam"):
            plan.check_dependencies()

    def test_outputs_of_other_sample_not_visible(self, genome, tmp_path):
        s1, s2 = make_samples(tmp_path, ["s1", "s2"])
        produce = Step("produce", (Command(("a",)),), outputs=(tmp_path / "s1.bam",))
        consume = Step("consume", (Command(("b",)),), inputs=(tmp_path / "s1.bam",))
        plan = ExecutionPlan(
            genome, [s1, s2], [StepGroup("s1", (produce,), s1), StepGroup("s2", (consume,), s2)]
        )

        with pytest.raises(PlanError):
            plan.check_dependencies()


class TestRenderPlan:
    """Test rendering to an executable script."""

    def test_rendering_is_deterministic(self, genome, workspace, tmp_path, test_config):
        samples = make_samples(tmp_path, ["s1", "s2"])
        first = render_plan(build_plan(genome, samples, workspace, test_config))
        second = render_plan(build_plan(genome, list(samples), workspace, dict(test_config)))
        assert first == second

    def test_script_structure(self, genome, workspace, tmp_path, test_config):
        plan = build_plan(genome, make_samples(tmp_path, ["s1"]), workspace, test_config)
        script = render_plan(plan)
        lines = script.splitlines()

        assert lines[0] == "#!/usr/bin/env bash"
        assert "set -euo pipefail" in lines
        assert f"mkdir -p {tmp_path}/fastqc_output" in lines
        echo_lines = [line for line in lines if line.startswith("echo ")]
        assert [shlex.split(line)[1] for line in echo_lines] == plan.labels

    def test_each_label_precedes_its_command(self, genome, workspace, tmp_path, test_config):
        plan = build_plan(genome, make_samples(tmp_path, ["s1"]), workspace, test_config)
        lines = render_plan(plan).splitlines()
        for step in plan.steps:
            index = lines.index(f"echo {shlex.quote(step.label)}")
            assert lines[index + 1] == step.render()

    def test_sample_names_with_spaces_are_quoted(self, genome, workspace, tmp_path, test_config):
        plan = build_plan(genome, make_samples(tmp_path, ["my sample"]), workspace, test_config)
        script = render_plan(plan)
        assert f"'{tmp_path}/my sample_1.fastq.gz'" in script

    def test_write_plan_is_executable(self, genome, workspace, tmp_path, test_config):
        plan = build_plan(genome, make_samples(tmp_path, ["s1"]), workspace, test_config)
        path = write_plan(plan, workspace.plan_path)

        assert path.read_text() == render_plan(plan)
        assert os.access(path, os.X_OK)

    def test_masking_step_uses_configured_interpreter(self, genome, workspace, tmp_path):
        samples = make_samples(tmp_path, ["s1"])
        default = render_plan(build_plan(genome, samples, workspace, {}))
        custom = render_plan(
            build_plan(genome, samples, workspace, {"python": "/opt/py/bin/python"})
        )

        assert "python3 -m consensusflow.masking s1 " in default
        assert sys.executable not in default
        assert "/opt/py/bin/python -m consensusflow.masking s1 " in custom
