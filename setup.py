from setuptools import find_packages, setup

package_files = [
    "alembic.ini",
    "alembic/env.py",
    "alembic/script.py.mako",
    "alembic/versions/*.py",
]

setup(
    name="portfolio-access",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*", "scripts"]),
    include_package_data=True,
    package_data={"portfolio_access": package_files},
    python_requires=">=3.11",
    install_requires=[
        "sqlalchemy[asyncio]>=2.0.0",
        "pydantic>=2.0.0",
        "asyncpg>=0.29.0",  # Required for async database operations
        "psycopg2-binary>=2.9.9",  # Sync driver used by Alembic migrations
        "alembic>=1.12.0",  # Schema migrations
        "python-dotenv>=1.0.0",  # DATABASE_URL and settings from .env
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "aiosqlite>=0.19.0",  # In-memory database for unit tests
        ],
    },
    description="Portfolio access control - memberships, invitations and permission audit",
    author="Portfolio Platform Team",
)
