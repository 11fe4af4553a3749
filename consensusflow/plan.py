"""
Plan generation - ordered per-sample external tool invocations.

The plan is structured data: groups of steps, each step a labelled list of
commands with declared input and output paths. It is turned into an
executable bash script only by ``render_plan``, where every argument is
quoted as a discrete token. The same genome, samples, workspace and
configuration always produce a byte-identical script.
"""

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .errors import PlanError
from .models import ReferenceGenome, Sample
from .version import __version__
from .workspace import Workspace

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
PLAN_TEMPLATE = "pipeline.sh.j2"

STEPS_PER_SAMPLE = 13


@dataclass(frozen=True)
class Command:
    """One external process invocation.

    Attributes
    ----------
    argv : tuple of str
        Executable followed by its arguments, one token each
    stdin : Path, optional
        File fed to standard input
    stdout : Path, optional
        File receiving standard output
    stderr : Path, optional
        File receiving standard error
    """

    argv: Tuple[str, ...]
    stdin: Optional[Path] = None
    stdout: Optional[Path] = None
    stderr: Optional[Path] = None

    @property
    def executable(self) -> str:
        return self.argv[0]

    def render(self) -> str:
        """Render the command as a shell fragment with every token quoted."""
        parts = [" ".join(shlex.quote(str(arg)) for arg in self.argv)]
        if self.stdin is not None:
            parts.append(f"< {shlex.quote(str(self.stdin))}")
        if self.stdout is not None:
            parts.append(f"> {shlex.quote(str(self.stdout))}")
        if self.stderr is not None:
            parts.append(f"2> {shlex.quote(str(self.stderr))}")
        return " ".join(parts)


@dataclass(frozen=True)
class Step:
    """A labelled step; more than one command forms a pipe."""

    label: str
    commands: Tuple[Command, ...]
    inputs: Tuple[Path, ...] = ()
    outputs: Tuple[Path, ...] = ()

    def render(self) -> str:
        return " | ".join(command.render() for command in self.commands)


@dataclass(frozen=True)
class StepGroup:
    """Ordered steps belonging to one sample, or to the shared genome/summary work."""

    name: str
    steps: Tuple[Step, ...]
    sample: Optional[Sample] = None


@dataclass
class ExecutionPlan:
    """Fully determined, ordered plan for one run.

    Attributes
    ----------
    genome : ReferenceGenome
        Shared reference for every sample
    samples : list of Sample
        Samples in resolution order
    groups : list of StepGroup
        Genome index group, one group per sample, then the summary group
    setup_dirs : list of Path
        Directories created before the first step
    """

    genome: ReferenceGenome
    samples: List[Sample]
    groups: List[StepGroup]
    setup_dirs: List[Path] = field(default_factory=list)

    @property
    def steps(self) -> List[Step]:
        return [step for group in self.groups for step in group.steps]

    @property
    def labels(self) -> List[str]:
        return [step.label for step in self.steps]

    @property
    def executables(self) -> List[str]:
        """Distinct executables invoked by the plan, in first-use order."""
        seen = []
        for step in self.steps:
            for command in step.commands:
                if command.executable not in seen:
                    seen.append(command.executable)
        return seen

    def check_dependencies(self) -> None:
        """Verify every step consumes only files that already exist at that point.

        A sample step may read the genome fasta, the genome index, its own
        raw reads, or outputs of earlier steps of the same sample. Shared
        (non-sample) steps may read the fasta or anything produced earlier.

        Raises
        ------
        PlanError
            If a step declares an input nothing has produced yet
        """
        shared = {self.genome.fasta_path}
        produced_anywhere = set(shared)
        for group in self.groups:
            if group.sample is not None:
                available = shared | {group.sample.read1_path, group.sample.read2_path}
            else:
                available = set(produced_anywhere)

            for step in group.steps:
                missing = [path for path in step.inputs if path not in available]
                if missing:
                    raise PlanError(
                        f"Step '{step.label}' consumes {', '.join(map(str, missing))} "
                        f"before any earlier step produces it",
                        stage=group.name,
                    )
                available.update(step.outputs)
                produced_anywhere.update(step.outputs)

            if group.sample is None:
                shared |= available

    def to_dict(self) -> Dict[str, Any]:
        return {
            "genome": str(self.genome.fasta_path),
            "samples": [sample.name for sample in self.samples],
            "groups": [
                {"name": group.name, "steps": [step.label for step in group.steps]}
                for group in self.groups
            ],
        }


def _genome_index_step(genome: ReferenceGenome) -> Step:
    return Step(
        label="Step 0: Building reference genome index",
        commands=(
            Command(("bowtie2-build", str(genome.fasta_path), str(genome.index_base_path))),
        ),
        inputs=(genome.fasta_path,),
        outputs=(genome.index_base_path,),
    )


def _sample_steps(
    sample: Sample, genome: ReferenceGenome, ws: Workspace, config: Dict[str, Any]
) -> List[Step]:
    """Build the fixed 13-step sequence for one sample."""
    s = sample.name
    r1, r2 = sample.read1_path, sample.read2_path
    p1 = ws.sample_path(s, "_P1.fastq")
    p2 = ws.sample_path(s, "_P2.fastq")
    fastp_html = ws.artifact_path(f"fastp-{s}.html")
    fastp_log = ws.artifact_path(f"fastp-{s}.log")
    sam = ws.sample_path(s, ".sam")
    bam = ws.sample_path(s, ".bam")
    flagstat = ws.sample_path(s, ".flagstat.txt")
    sorted_bam = ws.sample_path(s, ".sorted.bam")
    duprem_bam = ws.sample_path(s, ".duprem.bam")
    coverage = ws.artifact_path(f"coverage_{s}.txt")
    bed = ws.sample_path(s, ".bed")
    masked = ws.sample_path(s, "_masked.fasta")
    vcf = ws.sample_path(s, ".vcf.gz")
    vcf_index = ws.sample_path(s, ".vcf.gz.csi")
    consensus = ws.sample_path(s, "_genome.fa")

    threshold = int(config.get("low_coverage_threshold", 5))
    python = config.get("python", "python3")

    return [
        Step(
            f"Step 1.1: FastQC quality control report for {s}",
            (Command(("fastqc", "-o", str(ws.fastqc_dir), str(r1), str(r2))),),
            inputs=(r1, r2),
            outputs=(ws.fastqc_dir,),
        ),
        Step(
            f"Step 1.2: Adapter and quality trimming for {s}",
            (
                Command(
                    (
                        "fastp",
                        "-i", str(r1), "-o", str(p1),
                        "-I", str(r2), "-O", str(p2),
                        "--thread", str(config.get("fastp_threads", 4)),
                        "-h", str(fastp_html),
                    ),
                    stderr=fastp_log,
                ),
            ),
            inputs=(r1, r2),
            outputs=(p1, p2, fastp_html, fastp_log),
        ),
        Step(
            f"Step 2.1: Read alignment for {s}",
            (
                Command(
                    (
                        "bowtie2",
                        "-p", str(config.get("bowtie2_threads", 64)),
                        "-x", str(genome.index_base_path),
                        "-1", str(p1), "-2", str(p2),
                        "-S", str(sam),
                    )
                ),
            ),
            inputs=(genome.index_base_path, p1, p2),
            outputs=(sam,),
        ),
        Step(
            f"Step 3.1: Conversion of SAM to BAM for {s}",
            (Command(("samtools", "view", "-b", str(sam), "-o", str(bam))),),
            inputs=(sam,),
            outputs=(bam,),
        ),
        Step(
            f"Step 3.2: Alignment metrics for {s}",
            (Command(("samtools", "flagstat", str(bam)), stdout=flagstat),),
            inputs=(bam,),
            outputs=(flagstat,),
        ),
        Step(
            f"Step 3.3: Sorting BAM by coordinate for {s}",
            (Command(("samtools", "sort", str(bam), "-o", str(sorted_bam))),),
            inputs=(bam,),
            outputs=(sorted_bam,),
        ),
        Step(
            f"Step 3.4: Removing duplicate reads for {s}",
            (Command(("samtools", "rmdup", "-S", str(sorted_bam), str(duprem_bam))),),
            inputs=(sorted_bam,),
            outputs=(duprem_bam,),
        ),
        Step(
            f"Step 3.5: Deriving low coverage positions for {s}",
            (
                Command(("samtools", "depth", "-a", str(duprem_bam))),
                Command(
                    ("awk", f'$3 < {threshold} {{print $1"\\t"$2"\\t"$3}}'),
                    stdout=coverage,
                ),
            ),
            inputs=(duprem_bam,),
            outputs=(coverage,),
        ),
        Step(
            f"Step 3.6: Extracting start/end coordinates of low coverage segments for {s}",
            (Command((python, "-m", "consensusflow.masking", s, str(coverage), str(bed))),),
            inputs=(coverage,),
            outputs=(bed,),
        ),
        Step(
            f"Step 3.7: N-masking the reference for {s}",
            (
                Command(
                    (
                        "bedtools", "maskfasta",
                        "-fi", str(genome.fasta_path),
                        "-bed", str(bed),
                        "-mc", str(config.get("mask_char", "N")),
                        "-fo", str(masked),
                    )
                ),
            ),
            inputs=(genome.fasta_path, bed),
            outputs=(masked,),
        ),
        Step(
            f"Step 4.1: Variant calling for {s}",
            (
                Command(("bcftools", "mpileup", "-f", str(genome.fasta_path), str(duprem_bam))),
                Command(
                    (
                        "bcftools", "call", "-cv",
                        "--ploidy", str(config.get("ploidy", 1)),
                        "-Oz", "-o", str(vcf),
                    )
                ),
            ),
            inputs=(genome.fasta_path, duprem_bam),
            outputs=(vcf,),
        ),
        Step(
            f"Step 4.2: Indexing VCF for {s}",
            (Command(("bcftools", "index", str(vcf))),),
            inputs=(vcf,),
            outputs=(vcf_index,),
        ),
        Step(
            f"Step 4.3: Consensus genome generation for {s}",
            (Command(("bcftools", "consensus", str(vcf)), stdin=masked, stdout=consensus),),
            inputs=(vcf, vcf_index, masked),
            outputs=(consensus,),
        ),
    ]


def _summary_step(ws: Workspace) -> Step:
    return Step(
        label="Step 5.1: MultiQC aggregate quality control report",
        commands=(
            Command(
                ("multiqc", str(ws.fastqc_dir), str(ws.base_dir), "-o", str(ws.multiqc_dir))
            ),
        ),
        inputs=(ws.fastqc_dir,),
        outputs=(ws.multiqc_dir,),
    )


def build_plan(
    genome: ReferenceGenome,
    samples: Sequence[Sample],
    workspace: Workspace,
    config: Optional[Dict[str, Any]] = None,
) -> ExecutionPlan:
    """
    Build the ordered execution plan for a run.

    The genome index is built once, then every sample runs the fixed
    13-step sequence in resolution order, then one aggregate QC step
    covers all samples.

    Parameters
    ----------
    genome : ReferenceGenome
        Reference fasta and index base path
    samples : sequence of Sample
        Samples in resolution order
    workspace : Workspace
        Path provider for the run directory
    config : dict, optional
        Tool settings (threads, threshold, ploidy, mask character)

    Returns
    -------
    ExecutionPlan

    Raises
    ------
    PlanError
        If the samples list is empty or a dependency check fails
    """
    config = config or {}
    if not samples:
        raise PlanError("Cannot build a plan without samples")

    groups = [StepGroup("genome", (_genome_index_step(genome),))]
    for sample in samples:
        groups.append(
            StepGroup(sample.name, tuple(_sample_steps(sample, genome, workspace, config)), sample)
        )
    groups.append(StepGroup("summary", (_summary_step(workspace),)))

    plan = ExecutionPlan(
        genome=genome,
        samples=list(samples),
        groups=groups,
        setup_dirs=workspace.output_dirs,
    )
    plan.check_dependencies()
    logger.info(f"Built plan with {len(plan.steps)} steps for {len(plan.samples)} sample(s)")
    return plan


def _environment() -> Environment:
    if not TEMPLATES_DIR.exists():
        raise FileNotFoundError(f"Templates directory not found at: {TEMPLATES_DIR}")
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )
    env.filters["quote"] = lambda value: shlex.quote(str(value))
    return env


def render_plan(plan: ExecutionPlan) -> str:
    """Render the plan to a bash script that stops at the first failing step."""
    template = _environment().get_template(PLAN_TEMPLATE)
    return template.render(plan=plan, version=__version__)


def write_plan(plan: ExecutionPlan, path) -> Path:
    """Write the rendered plan to path and make it executable."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_plan(plan), encoding="utf-8")
    path.chmod(0o755)
    logger.info(f"Pipeline script written to {path}")
    return path
