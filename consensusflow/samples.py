# File: consensusflow/samples.py
# Location: consensusflow/consensusflow/samples.py

"""
Sample resolution module.

Turns an unordered upload set into one reference genome plus an ordered
list of paired-end samples. Read files are consumed in fixed pairs by
upload order (i, i+1). Each pair is offered to the pairing conventions in
priority order; the first convention that accepts the pair names the
sample. Files following a non-canonical convention are renamed on disk to
the canonical ``<sample>_1.fastq.gz`` / ``<sample>_2.fastq.gz`` layout so
every downstream step sees one naming scheme.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import (
    InvalidSampleNameError,
    MismatchedPairError,
    NoGenomeFoundError,
    NoSamplesError,
)
from .models import ReferenceGenome, Sample, UploadedFile

logger = logging.getLogger("consensusflow")

GENOME_EXTENSIONS = (".fasta", ".fa")


@dataclass(frozen=True)
class PairingConvention:
    """A paired-end naming convention defined by its two read suffixes.

    Attributes
    ----------
    name : str
        Short identifier used in logs
    read1_suffix : str
        Suffix of the first read file
    read2_suffix : str
        Suffix of the second read file
    """

    name: str
    read1_suffix: str
    read2_suffix: str

    def match(self, first: str, second: str) -> Optional[str]:
        """Return the sample name if both file names follow this convention.

        The base names left after stripping the suffixes must be equal and
        non-empty, otherwise the pair is not a match.
        """
        if not (first.endswith(self.read1_suffix) and second.endswith(self.read2_suffix)):
            return None
        base1 = first[: -len(self.read1_suffix)]
        base2 = second[: -len(self.read2_suffix)]
        if not base1 or base1 != base2:
            return None
        return base1

    def file_names(self, sample_name: str) -> Tuple[str, str]:
        return sample_name + self.read1_suffix, sample_name + self.read2_suffix


CANONICAL = PairingConvention("canonical", "_1.fastq.gz", "_2.fastq.gz")
ILLUMINA = PairingConvention("illumina", "_R1.fastq.gz", "_R2.fastq.gz")

# Tried in this order; the first entry is the layout every sample ends up in.
DEFAULT_CONVENTIONS: Tuple[PairingConvention, ...] = (CANONICAL, ILLUMINA)


def is_plain_name(name: str) -> bool:
    """True for a name that stays inside the directory it is joined to."""
    return name not in (".", "..") and Path(name).name == name and "\\" not in name


def is_genome_file(name: str, extensions: Iterable[str] = GENOME_EXTENSIONS) -> bool:
    return any(name.endswith(ext) for ext in extensions)


def find_genome(
    uploads: Sequence[UploadedFile], extensions: Iterable[str] = GENOME_EXTENSIONS
) -> UploadedFile:
    """
    Pick the reference genome out of an upload set.

    Parameters
    ----------
    uploads : sequence of UploadedFile
        Files in upload order.
    extensions : iterable of str
        Accepted genome file extensions.

    Returns
    -------
    UploadedFile
        The first upload whose name ends with a genome extension.

    Raises
    ------
    NoGenomeFoundError
        If no upload matches.
    """
    extensions = tuple(extensions)
    for upload in uploads:
        if is_genome_file(upload.original_name, extensions):
            return upload
    raise NoGenomeFoundError(extensions)


def _pair_uploads(
    reads: Sequence[UploadedFile], conventions: Sequence[PairingConvention]
) -> List[Tuple[str, PairingConvention, UploadedFile, UploadedFile]]:
    pairs = []
    for i in range(0, len(reads), 2):
        first = reads[i]
        if i + 1 >= len(reads):
            raise MismatchedPairError(first.original_name, None)
        second = reads[i + 1]

        for convention in conventions:
            sample_name = convention.match(first.original_name, second.original_name)
            if sample_name is not None:
                pairs.append((sample_name, convention, first, second))
                break
        else:
            raise MismatchedPairError(first.original_name, second.original_name)
    return pairs


def _normalize(
    sample_name: str,
    convention: PairingConvention,
    first: UploadedFile,
    second: UploadedFile,
    canonical: PairingConvention,
) -> Tuple[Path, Path]:
    """Rename a pair to the canonical layout next to where it is stored."""
    if convention == canonical:
        return first.stored_path, second.stored_path

    name1, name2 = canonical.file_names(sample_name)
    target1 = first.stored_path.with_name(name1)
    target2 = second.stored_path.with_name(name2)
    first.stored_path.replace(target1)
    second.stored_path.replace(target2)
    logger.info(
        f"Renamed {convention.name} pair for sample '{sample_name}': "
        f"{first.stored_path.name} -> {target1.name}, {second.stored_path.name} -> {target2.name}"
    )
    return target1, target2


def resolve_samples(
    uploads: Sequence[UploadedFile],
    genome: Optional[UploadedFile] = None,
    conventions: Sequence[PairingConvention] = DEFAULT_CONVENTIONS,
    normalize: bool = True,
) -> List[Sample]:
    """
    Pair read files into samples, preserving upload order.

    Every pair is validated before anything is renamed, so a failing
    resolution leaves the upload directory untouched.

    Parameters
    ----------
    uploads : sequence of UploadedFile
        Files in upload order, optionally including the genome.
    genome : UploadedFile, optional
        Genome upload to leave out of pairing.
    conventions : sequence of PairingConvention
        Conventions in priority order; the first one is canonical.
    normalize : bool
        Rename non-canonical pairs on disk. Disable for dry runs.

    Returns
    -------
    list of Sample

    Raises
    ------
    MismatchedPairError
        If a pair matches no convention, a file has no partner, a sample
        name has a directory part, or two pairs resolve to the same name.
    """
    reads = [u for u in uploads if u is not genome]
    pairs = _pair_uploads(reads, conventions)

    seen = {}
    for sample_name, _, first, second in pairs:
        if not is_plain_name(sample_name):
            raise InvalidSampleNameError(first.original_name, second.original_name, sample_name)
        if sample_name in seen:
            raise MismatchedPairError(
                first.original_name,
                second.original_name,
                reason=f"Sample '{sample_name}' was uploaded more than once "
                f"('{seen[sample_name]}' and '{first.original_name}')",
            )
        seen[sample_name] = first.original_name

    canonical = conventions[0]
    samples = []
    for sample_name, convention, first, second in pairs:
        if normalize:
            read1, read2 = _normalize(sample_name, convention, first, second, canonical)
        else:
            read1 = first.stored_path.with_name(canonical.file_names(sample_name)[0])
            read2 = second.stored_path.with_name(canonical.file_names(sample_name)[1])
        samples.append(Sample(name=sample_name, read1_path=read1, read2_path=read2))
        logger.debug(f"Resolved sample '{sample_name}' ({convention.name} naming)")

    return samples


def resolve_uploads(
    uploads: Sequence[UploadedFile],
    extensions: Iterable[str] = GENOME_EXTENSIONS,
    conventions: Sequence[PairingConvention] = DEFAULT_CONVENTIONS,
    normalize: bool = True,
) -> Tuple[ReferenceGenome, List[Sample]]:
    """Resolve an upload set into its reference genome and ordered samples."""
    genome_upload = find_genome(uploads, extensions)
    samples = resolve_samples(uploads, genome_upload, conventions, normalize=normalize)
    if not samples:
        raise NoSamplesError()
    logger.info(
        f"Resolved {len(samples)} sample(s) against genome {genome_upload.original_name}: "
        f"{', '.join(s.name for s in samples)}"
    )
    return ReferenceGenome.from_fasta(genome_upload.stored_path), samples
