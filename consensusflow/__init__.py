# File: consensusflow/__init__.py
# Location: consensusflow/consensusflow/__init__.py

"""
consensusflow Package.

This package resolves uploaded paired-end read files into samples, generates
an ordered plan of external tool invocations (alignment, coverage analysis,
variant calling, consensus genome generation), runs that plan as a supervised
subprocess and streams its progress to any number of subscribers.
"""

from .version import __version__
