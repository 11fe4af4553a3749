# File: consensusflow/setup.py
# Location: consensusflow/setup.py
"""
Setup script for consensusflow.

This file configures how the package is built, installed, and what
dependencies are required.
"""

import os
from setuptools import setup, find_packages

# Load version from version.py without importing the module
version = {}
with open(os.path.join("consensusflow", "version.py")) as f:
    exec(f.read(), version)

# Read the README for the long description
this_dir = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_dir, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="consensusflow",
    version=version["__version__"],
    description="Align paired-end reads, call variants and build consensus genomes with live progress.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["consensusflow", "consensusflow.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pandas",
        "jinja2",
        "fastapi",
        "pydantic",
        "uvicorn",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
    entry_points={"console_scripts": ["consensusflow=consensusflow.cli:main"]},
    include_package_data=True,
    package_data={"consensusflow": ["config.json", "templates/*.j2"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
    ],
)
