"""Setup configuration for the Match Stream Recorder API."""

from pathlib import Path

from setuptools import setup, find_packages

requirements = Path(__file__).with_name("requirements.txt").read_text().splitlines()

setup(
    name="match-stream-recorder",
    version="1.0.0",
    description="API for recording live match streams on demand or on schedule with upload to S3-compatible storage",
    packages=find_packages(include=["match_recorder", "match_recorder.*"]),
    py_modules=["main"],
    install_requires=[line for line in requirements if line and not line.startswith("#")],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "httpx>=0.24",
        ],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "match-recorder=main:run",
        ],
    },
)
