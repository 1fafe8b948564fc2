# setup.py

from setuptools import setup, find_namespace_packages

VERSION = "0.1.0"
DESCRIPTION = "RnaSeq Agent: A pipeline orchestrator for bulk RNA-seq count analysis."
# Attempt to read the long description from README.md
try:
    with open("README.md", "r", encoding="utf-8") as fh:
        LONG_DESCRIPTION = fh.read()
except FileNotFoundError:
    LONG_DESCRIPTION = DESCRIPTION

setup(
    name="rnaseq_agent",
    version=VERSION,
    author="MICHAEL IRUNGU",
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/markdown",
    # Package directories carry no __init__.py
    packages=find_namespace_packages(include=["rnaseq_agent", "rnaseq_agent.*"]),
    install_requires=[
        "scanpy>=1.10",
        "anndata>=0.10",
        "pandas>=1.5",
        "numpy>=1.21",
        "matplotlib>=3.5",
        "PyYAML>=6.0",
        "scipy>=1.11",          # stats.false_discovery_control
        "pydeseq2>=0.5",        # formula designs
        "gseapy>=1.0"
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
    ],
    entry_points={
        'console_scripts': [
            'rnaseq-agent=rnaseq_agent.cli:main',
        ],
    }
)
