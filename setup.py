"""Setup script for the seatpay settlement service."""

from setuptools import setup, find_packages

setup(
    name="seatpay",
    version="1.0.0",
    description="Two-phase payment settlement for ride seat bookings (card and wallet rails)",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["seatpay", "seatpay.*"]),
    package_data={"seatpay.database": ["migrations/versions/*.py"]},
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.11.0",
            "respx>=0.21.0",
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
            "seatpay-api=seatpay.api.main:run",
            "seatpay-sweeper=seatpay.workers.expiry_sweeper:main",
            "seatpay-outbox=seatpay.workers.outbox_publisher:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
