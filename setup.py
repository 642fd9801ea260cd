"""Setup configuration for store-sync package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
readme_file = Path(__file__).parent / "README.md"
long_description = (
    readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""
)

setup(
    name="store-sync",
    version="1.0.0",
    description="Incremental sync of rate-limited store API collections into JSON-lines changelogs, with in-place compaction",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*", "docs", "docs.*"]),
    python_requires=">=3.9",
    install_requires=[
        "httpx>=0.24.0",  # HTTP client, Link header parsing
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",  # STORESYNC_* environment settings
        "python-dotenv>=1.0.0",
        "pyyaml>=6.0",
        "requests-toolbelt>=1.0.0",  # User-Agent builder
        "tenacity>=8.0.0",  # For retry logic
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "black>=22.0.0",
            "flake8>=5.0.0",
            "mypy>=0.990",
        ],
    },
    entry_points={
        "console_scripts": [
            "storesync=storesync.__main__:main",
            "storesync-compact=storesync.__main__:compact_main",
        ],
    },
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    keywords="data-sync changelog rest-api pagination rate-limiting incremental-load",
)
