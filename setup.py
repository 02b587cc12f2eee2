"""Setup script for the FitLink CLI and service."""

from setuptools import setup

setup(
    name="fitlink",
    version="0.1.0",
    description="FitLink - Wearable device linking and sync service",
    author="FitLink",
    py_modules=["fitlink"],
    packages=["fitlink_connector", "fitlink_normalize", "server"],
    package_dir={
        "fitlink_connector": "libs/py-connector/fitlink_connector",
        "fitlink_normalize": "libs/py-normalize/fitlink_normalize",
    },
    install_requires=[
        "typer[all]>=0.9.0",
        "rich>=13.0.0",
        "httpx>=0.27.0",
        "python-dotenv>=1.0.0",
        "fastapi>=0.110.0",
        "uvicorn>=0.27.0",
        # Dependencies from py-connector / py-normalize
        "pydantic>=2.0.0",
        "boto3>=1.34.0",
        "cryptography>=42.0.0",
        "python-dateutil>=2.8.0",
        "numpy>=1.24.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "moto[dynamodb]>=5.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "fitlink=fitlink:app",
        ],
    },
    python_requires=">=3.11",
)
