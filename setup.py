"""Setup script for the LegalFlow package."""

from setuptools import setup, find_packages

setup(
    name="legalflow",
    version="0.1.0",
    packages=find_packages(include=["legalflow", "legalflow.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
        "prometheus-client>=0.20",
        "asyncpg>=0.29",
        "redis>=5.0.1",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "tenacity>=8.2",
        "sqlalchemy>=2.0",
        "alembic>=1.13",
        "httpx>=0.27",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    description="LegalFlow - Legal agent orchestration and result caching",
    author="LegalFlow Team",
)
