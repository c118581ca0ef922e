"""
Setup script for mental-model-engine.

The Mental Model Engine watches a developer's interaction events, keeps a
per-user knowledge graph of the concepts they touch, estimates proficiency
per concept and flags cognitive blind spots when struggle signals pile up.

The 'mme' command replays recorded event logs and inspects persisted
profiles (weak areas, proficiency breakdowns, pruning audit).
"""

from setuptools import find_packages, setup

setup(
    name="mental-model-engine",
    version="0.1.0",
    description="Per-user knowledge graph and cognitive blind spot analyzer for developer activity",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    author="Right Learning",
    packages=find_packages(include=["src", "src.*"]),
    py_modules=["config"],
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.12.0",
        "rich>=13.0.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # Logging
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "mme=src.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development",
    ],
    keywords="knowledge-graph proficiency developer-tools learning cli",
)
