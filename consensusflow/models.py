"""
Value types shared by the resolver, the plan generator and the run manager.
"""

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class UploadedFile:
    """A file delivered by upload intake.

    Attributes
    ----------
    original_name : str
        File name as sent by the client
    stored_path : Path
        Location of the stored file on durable storage
    """

    original_name: str
    stored_path: Path

    def __post_init__(self):
        object.__setattr__(self, "stored_path", Path(self.stored_path))

    @classmethod
    def from_path(cls, path) -> "UploadedFile":
        """Create an upload record for a file already on disk."""
        path = Path(path)
        return cls(original_name=path.name, stored_path=path)


@dataclass(frozen=True)
class Sample:
    """One paired-end sequencing run, identified by its name."""

    name: str
    read1_path: Path
    read2_path: Path

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "read1_path": str(self.read1_path),
            "read2_path": str(self.read2_path),
        }


@dataclass(frozen=True)
class ReferenceGenome:
    """Reference fasta plus the base path of its aligner index."""

    fasta_path: Path
    index_base_path: Path

    @classmethod
    def from_fasta(cls, fasta_path) -> "ReferenceGenome":
        """Derive the index base path by stripping the fasta extension."""
        fasta_path = Path(fasta_path)
        return cls(fasta_path=fasta_path, index_base_path=fasta_path.with_suffix(""))
