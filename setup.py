"""Setup configuration for jobqueue."""

from setuptools import setup, find_packages

setup(
    name="jobqueue",
    version="1.0.0",
    description="Priority job scheduler with retries, timeouts and durable queue snapshots",
    author="Your Name",
    packages=find_packages(include=["jobqueue", "jobqueue.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "jobqueue=jobqueue.cli:cli",
        ],
    },
    python_requires=">=3.8",
)
