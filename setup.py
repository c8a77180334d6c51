"""
Colony - Setup Configuration

A multi-entity LLM conversation runtime: named entities on their own model
endpoints, four wire dialects, client-side tool loops, admission control
and context compaction.

License: Apache-2.0
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""

# Core dependencies
core_deps = [
    # Runtime core
    "pydantic>=2.11.9",
    "httpx>=0.28.1",
    "pyyaml>=6.0.2",
    # Validation
    "jsonschema>=4.23.0",
    # CLI / terminal
    "click>=8.1.7",
    "rich>=14.1.0",
    "python-dotenv>=1.0.1",
]

# Test dependencies
test_deps = [
    "pytest>=8.4.1",
    "pytest-asyncio>=1.0.0",
    "pytest-mock>=3.14.1",
    "pytest-cov>=6.2.1",
]

# Development dependencies
dev_deps = test_deps + [
    # Code quality
    "black>=25.0.0",
    "flake8>=7.1.0",
    "mypy>=1.13.0",
]

setup(
    name="colony",
    version="0.1.0",

    # Package description
    description="A multi-entity LLM conversation runtime speaking Anthropic, OpenAI-compatible and LM Studio dialects",
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
        "test": test_deps,
        "dev": dev_deps,
    },

    # PyPI classifiers
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Programming Language :: Python :: 3 :: Only",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Framework :: AsyncIO",
    ],

    # Keywords for PyPI search
    keywords=[
        "ai", "agents", "multi-agent", "llm", "lm-studio",
        "openai", "anthropic", "streaming", "tool-calling",
    ],

    # License
    license="Apache-2.0",

    # Package data
    include_package_data=True,
    zip_safe=False,

    entry_points={
        "console_scripts": [
            "colony=colony.cli:main",
        ],
    },
)
