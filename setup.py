"""Setup configuration for backupctl."""

from setuptools import setup, find_packages

setup(
    name="backupctl",
    version="1.0.0",
    description="Scheduled folder backups to object storage on a shared batch queue",
    packages=find_packages(include=["backupctl", "backupctl.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "croniter>=2.0.0",
        "boto3>=1.28.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "backupctl=backupctl.cli:cli",
        ],
    },
    python_requires=">=3.8",
)
