"""Setup file for development installation."""

from setuptools import setup, find_namespace_packages

setup(
    name="gyb-chat",
    version="0.1.0",
    packages=find_namespace_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "python-multipart>=0.0.9",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=24.1",
        "prometheus-client>=0.20",
        "opentelemetry-instrumentation-fastapi>=0.45b0",
        "openai>=1.30",
        "google-generativeai>=0.8",
        "sqlalchemy[asyncio]>=2.0",
        "aiosqlite>=0.20",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
)
