"""Setup configuration for fitlink-normalize."""

from setuptools import setup, find_packages

setup(
    name="fitlink-normalize",
    version="0.1.0",
    description="Normalization of wearable vendor payloads into canonical health data",
    packages=find_packages(exclude=["tests"]),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.0.0",
        "python-dateutil>=2.8.0",
        "numpy>=1.24.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
        ],
    },
    author="FitLink",
    license="MIT",
)
