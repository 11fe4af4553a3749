# File: consensusflow/utils.py
# Location: consensusflow/consensusflow/utils.py

"""
Utility functions module.

Provides helper functions for checking tool availability and retrieving
tool versions.
"""

import logging
import shutil
import subprocess
from typing import List

from .errors import ToolNotFoundError

logger = logging.getLogger("consensusflow")


def require_external_tools(tools: List[str]) -> None:
    """
    Raise ToolNotFoundError for the first tool missing from PATH.

    Parameters
    ----------
    tools : List[str]
        List of tool names that must be available

    Raises
    ------
    ToolNotFoundError
        If any tool cannot be found
    """
    for tool in tools:
        if not shutil.which(tool):
            raise ToolNotFoundError(tool)


def get_tool_version(tool_name: str) -> str:
    """
    Retrieve the version of a given tool.

    Supported tools:

    - bowtie2
    - samtools
    - bcftools
    - bedtools
    - fastp
    - fastqc
    - multiqc

    Parameters
    ----------
    tool_name : str
        Name of the tool to retrieve version for.

    Returns
    -------
    str
        Version string or 'N/A' if not found or cannot be retrieved.
    """

    def first_line_containing(needle):
        def parse(stdout, stderr):
            for line in (stdout + "\n" + stderr).splitlines():
                if needle in line.lower():
                    return line.strip()
            return "N/A"

        return parse

    tool_map = {
        "bowtie2": ["bowtie2", "--version"],
        "samtools": ["samtools", "--version"],
        "bcftools": ["bcftools", "--version"],
        "bedtools": ["bedtools", "--version"],
        "fastp": ["fastp", "--version"],
        "fastqc": ["fastqc", "--version"],
        "multiqc": ["multiqc", "--version"],
    }

    if tool_name not in tool_map:
        logger.warning("No version retrieval logic for %s. Returning 'N/A'.", tool_name)
        return "N/A"

    cmd = tool_map[tool_name]
    parse_func = first_line_containing(tool_name.lower())

    try:
        result = subprocess.run(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, check=False
        )
        version = parse_func(result.stdout, result.stderr)
        if version == "N/A":
            logger.warning("Could not parse version for %s. Returning 'N/A'.", tool_name)
        return version
    except OSError as e:
        logger.warning("Failed to retrieve version for %s: %s", tool_name, e)
        return "N/A"
