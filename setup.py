"""
Setup script for Marketplace Job Orchestrator

Lifecycle engine for service jobs in a two-sided marketplace: posting,
bidding, scheduling, execution, change orders with escrow, and time-based
expiration.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Marketplace Job Orchestrator

    Lifecycle engine for service jobs in a two-sided marketplace connecting
    customers with mechanics, with competitive bidding, change orders backed
    by escrow payments, and automatic expiration of stale postings.
    """

setup(
    name="marketplace-job-orchestrator",
    version="1.0.0",
    description="Job lifecycle orchestration for a customer/mechanic service marketplace",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Marketplace Job Orchestrator Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    keywords="marketplace, job lifecycle, bidding, escrow, state machine, async",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    python_requires=">=3.10",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",

        # Configuration
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "marketplace-job-orchestrator=marketplace_job_orchestrator.cli.main:main",
            "mjo=marketplace_job_orchestrator.cli.main:main",
        ],
    },
)
