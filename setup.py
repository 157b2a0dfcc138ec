from setuptools import setup, find_packages

setup(
    name="tflocker",
    version="0.1.0",
    description="Remote state backend with versioned storage and lock tokens",
    author="tflocker Team",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
        "sqlalchemy>=2.0",
        "click>=8.0",
        "rich>=13.0",
        "flask>=2.3",
        "python-dateutil>=2.8",
    ],
    extras_require={
        "postgres": [
            "psycopg2-binary>=2.9",
        ],
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "tflocker=tflocker.cli:main",
        ],
    },
)
