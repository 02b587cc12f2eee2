"""Setup configuration for fitlink-connector."""

from setuptools import setup, find_packages

setup(
    name="fitlink-connector",
    version="0.1.0",
    description="Device linking, encrypted credential storage and sync orchestration for FitLink",
    packages=find_packages(exclude=["tests"]),
    python_requires=">=3.11",
    install_requires=[
        "fitlink-normalize>=0.1.0",
        "pydantic>=2.0.0",
        "httpx>=0.24.0",
        "boto3>=1.26.0",
        "cryptography>=41.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "moto[dynamodb]>=5.0.0",  # For mocking AWS services
        ],
    },
    author="FitLink",
    license="MIT",
)
