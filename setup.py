"""Setup script for the order fulfillment pipeline."""

from setuptools import setup, find_packages

setup(
    name="order-fulfillment",
    version="0.1.0",
    description="Order fulfillment pipeline: stock reservations, payment saga and compensation",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.11",
    packages=find_packages(include=["fulfillment", "fulfillment.*"]),
    package_data={"fulfillment": ["database/migrations/versions/*.py"]},
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
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
            "fulfillment-sweeper=fulfillment.workers.sweeper_worker:main",
            "fulfillment-stock-worker=fulfillment.workers.stock_task_worker:main",
            "fulfillment-outbox=fulfillment.workers.outbox_publisher:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
