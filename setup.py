"""Setup file for development installation."""

from setuptools import setup, find_namespace_packages

setup(
    name="firechat-sync",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["firechat_sync*"]),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "tenacity>=8.2",
        "fastapi>=0.110",
        "prometheus-client>=0.19",
        "opentelemetry-instrumentation-fastapi>=0.43b0",
        "google-cloud-firestore>=2.13",
        "google-api-core>=2.15",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
)
