"""Setup script for the Store Bot Engine."""
from pathlib import Path

from setuptools import find_packages, setup

HERE = Path(__file__).parent

setup(
    name="storebot-engine",
    version="0.1.0",
    description="Payment and stock consistency engine for a chat-based store bot",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        line.strip()
        for line in (HERE / "requirements.txt").read_text().splitlines()
        if line.strip() and not line.startswith("#")
    ],
    extras_require={
        "test": [
            "pytest>=8.0.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.20.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "storebot-api=storebot.api.main:run",
            "storebot-catalog-sync=storebot.workers.catalog_sync_worker:main",
            "storebot-checkout-timeout=storebot.workers.checkout_timeout_worker:main",
            "storebot-notification-retry=storebot.workers.notification_retry_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Framework :: AsyncIO",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
