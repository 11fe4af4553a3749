"""
Workspace - Centralized file path management for pipeline runs.

This module provides the Workspace class that manages all file paths
inside the run directory: the uploaded reads, the per-sample artifacts
produced by each step, the QC report directories, the generated plan
and the progress log.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class Workspace:
    """Manages all file paths for a pipeline run.

    Every path handed out is derived only from the base directory, the
    configured file names and the sample name, so the same inputs always
    give the same paths.

    Attributes
    ----------
    base_dir : Path
        Directory holding uploads and every generated artifact
    plan_path : Path
        Location of the rendered pipeline script
    progress_path : Path
        Location of the progress log
    fastqc_dir : Path
        Directory receiving per-read-file QC reports
    multiqc_dir : Path
        Directory receiving the aggregate QC report
    """

    def __init__(self, base_dir, config: Optional[Dict[str, Any]] = None):
        """Initialize workspace with a base directory.

        Parameters
        ----------
        base_dir : Path or str
            Run directory
        config : dict, optional
            Configuration providing file and directory names
        """
        config = config or {}
        self.base_dir = Path(base_dir)
        self.plan_path = self.base_dir / config.get("plan_file", "pipeline.sh")
        self.progress_path = self.base_dir / config.get("progress_file", "progress.txt")
        self.fastqc_dir = self.base_dir / config.get("fastqc_dir", "fastqc_output")
        self.multiqc_dir = self.base_dir / config.get("multiqc_dir", "multiqc_output")

    def ensure(self) -> "Workspace":
        """Create the base directory if it does not exist yet."""
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Workspace ready: base_dir={self.base_dir}")
        return self

    def sample_path(self, sample_name: str, suffix: str) -> Path:
        """Generate a per-sample artifact path.

        Parameters
        ----------
        sample_name : str
            Sample name used as file prefix
        suffix : str
            Suffix including extension (e.g., ".sorted.bam", "_P1.fastq")

        Returns
        -------
        Path
            Full path in the base directory
        """
        return self.base_dir / f"{sample_name}{suffix}"

    def artifact_path(self, name: str) -> Path:
        """Generate a path for an artifact whose name is not sample-prefixed."""
        return self.base_dir / name

    @property
    def output_dirs(self) -> List[Path]:
        """Directories the plan creates before the first step runs."""
        return [self.fastqc_dir, self.multiqc_dir]

    def __repr__(self) -> str:
        """Return string representation of the workspace."""
        return f"Workspace(base_dir='{self.base_dir}')"
