"""
Pitwall - Setup Configuration

An async orchestration engine for Formula 1 analysis queries: multi-tier
routing, concurrent handler execution, checkpointed workflow state and
streamed progress events.

License: MIT
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""

# Core dependencies
core_deps = [
    # Framework core
    "pydantic>=2.11.9",
    "aiohttp>=3.12.15",
    # Storage
    "aiosqlite>=0.20.0",
    # CLI
    "click>=8.1.7",
    # Validation
    "jsonschema>=4.23.0",
]

# Development dependencies
dev_deps = [
    # Testing
    "pytest>=8.4.1",
    "pytest-asyncio>=1.0.0",
    "pytest-mock>=3.14.1",
    "pytest-cov>=6.2.1",
    # Code quality
    "black>=25.0.0",
    "flake8>=7.1.0",
    "mypy>=1.13.0",
]

setup(
    name="pitwall",
    version="0.1.0",

    # Package description
    description="Async orchestration engine that routes F1 analysis queries to specialized handlers",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    packages=find_packages(where="src"),
    package_dir={"": "src"},

    # Python version requirement
    python_requires=">=3.11",

    # Dependencies
    install_requires=core_deps,

    # Optional dependencies (extras)
    extras_require={
        "dev": dev_deps,
    },

    # PyPI classifiers
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Programming Language :: Python :: 3 :: Only",
        "Framework :: AsyncIO",
        "Topic :: Software Development :: Libraries :: Application Frameworks",
    ],

    keywords=["f1", "formula-1", "llm", "orchestration", "routing", "workflow", "asyncio"],

    license="MIT",

    include_package_data=True,
    zip_safe=False,

    entry_points={
        "console_scripts": [
            "pitwall=pitwall.cli:main",
        ],
    },
)
