from setuptools import find_packages, setup

setup(
    name="bulkmerge",
    version="0.1.0",
    description="Bulk insert-or-update for SQL Server via a staging table and a single MERGE",
    packages=find_packages(include=["bulkmerge", "bulkmerge.*"]),
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0",
        "sqlalchemy>=2.0.23",
        "pyodbc>=5.0",
        "pandas>=1.5",
        "pyyaml>=6.0",
        "rich>=13.0",
    ],
    extras_require={
        "async": ["sqlalchemy[asyncio]>=2.0.23", "aioodbc>=0.5"],
        "test": ["pytest>=7.0", "sqlalchemy[asyncio]>=2.0.23", "aioodbc>=0.5"],
    },
)
