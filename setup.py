from setuptools import find_packages, setup

setup(
    name="mc-cloud-manager",
    version="0.1.0",
    packages=find_packages(
        include=[
            "mcm_common",
            "mcm_common.*",
            "mcm_persistence",
            "mcm_persistence.*",
            "mcm_controller",
            "mcm_controller.*",
            "mcm_api",
            "mcm_api.*",
            "mcm_cli",
            "mcm_cli.*",
        ]
    ),
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn[standard]>=0.24.0",
        "pydantic>=2.0",
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "mcm=mcm_cli.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
