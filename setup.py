"""Setup configuration for jobctl."""

from setuptools import setup, find_packages

setup(
    name="jobctl",
    version="1.0.0",
    description="Durable background job engine with retries, priorities and a dead-letter queue",
    author="Your Name",
    packages=find_packages(include=["jobctl", "jobctl.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "opentelemetry-api>=1.20.0",
    ],
    extras_require={
        "tests": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
            "opentelemetry-sdk>=1.20.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "jobctl=jobctl.cli:cli",
        ],
    },
    python_requires=">=3.9",
)
