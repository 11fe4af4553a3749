"""
Low coverage masking intervals.

Reads the per-position depth table produced by the low coverage step
(``chrom<TAB>pos<TAB>depth``, 1-based positions, only positions below the
depth threshold) and collapses runs of consecutive positions into BED
intervals (0-based start, exclusive end) for ``bedtools maskfasta``.

Invoked from the generated plan as::

    python -m consensusflow.masking SAMPLE COVERAGE_TXT OUTPUT_BED
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

DEPTH_COLUMNS = ["chrom", "pos", "depth"]
BED_COLUMNS = ["chrom", "start", "end"]


def read_depth_table(path: str) -> pd.DataFrame:
    """Load a depth table; an empty file gives an empty frame."""
    if os.path.getsize(path) == 0:
        return pd.DataFrame(
            {
                "chrom": pd.Series(dtype=str),
                "pos": pd.Series(dtype="int64"),
                "depth": pd.Series(dtype="int64"),
            }
        )
    return pd.read_csv(
        path,
        sep="\t",
        header=None,
        names=DEPTH_COLUMNS,
        usecols=[0, 1, 2],
        dtype={"chrom": str, "pos": "int64", "depth": "int64"},
    )


def low_coverage_intervals(depth: pd.DataFrame) -> pd.DataFrame:
    """
    Collapse consecutive low coverage positions into BED intervals.

    Parameters
    ----------
    depth : pd.DataFrame
        Columns chrom, pos (1-based); rows in the order samtools emits them.

    Returns
    -------
    pd.DataFrame
        Columns chrom, start (0-based), end (exclusive), one row per run.
    """
    if depth.empty:
        return pd.DataFrame(
            {
                "chrom": pd.Series(dtype=str),
                "start": pd.Series(dtype="int64"),
                "end": pd.Series(dtype="int64"),
            }
        )

    chrom = depth["chrom"].reset_index(drop=True)
    pos = depth["pos"].reset_index(drop=True)
    new_run = (chrom != chrom.shift()) | (pos != pos.shift() + 1)
    run_id = new_run.cumsum()

    runs = (
        pd.DataFrame({"chrom": chrom, "pos": pos, "run": run_id})
        .groupby("run", sort=False)
        .agg(chrom=("chrom", "first"), first=("pos", "first"), last=("pos", "last"))
    )
    intervals = pd.DataFrame(
        {
            "chrom": runs["chrom"].values,
            "start": (runs["first"] - 1).values,
            "end": runs["last"].values,
        }
    )
    return intervals[BED_COLUMNS]


def write_bed(sample_name: str, coverage_path: str, bed_path: str) -> int:
    """
    Convert a low coverage depth table into a BED file.

    Parameters
    ----------
    sample_name : str
        Sample the table belongs to, used for logging
    coverage_path : str
        Depth table written by the low coverage step
    bed_path : str
        Destination BED file

    Returns
    -------
    int
        Number of intervals written
    """
    intervals = low_coverage_intervals(read_depth_table(coverage_path))
    intervals.to_csv(bed_path, sep="\t", header=False, index=False)
    logger.info(f"Wrote {len(intervals)} low coverage interval(s) for {sample_name} to {bed_path}")
    return len(intervals)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Derive BED masking intervals from low coverage positions."
    )
    parser.add_argument("sample", help="Sample name")
    parser.add_argument("coverage", help="Low coverage depth table (chrom, pos, depth)")
    parser.add_argument("bed", help="Output BED file")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    write_bed(args.sample, args.coverage, args.bed)
    return 0


if __name__ == "__main__":
    sys.exit(main())
