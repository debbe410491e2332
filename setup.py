#!/usr/bin/env python3
"""
Setup script for Pathwise.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

setup(
    name="pathwise",
    version="0.1.0",
    description="Request-path optimization engine: adaptive caching, coalescing and anomaly detection as async middleware",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Pathwise Contributors",
    packages=find_packages(include=["pathwise", "pathwise.*"]),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24.0",
        "psutil>=5.9.0",
        "click>=8.1.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
            "httpx>=0.24.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pathwise=pathwise.cli.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Internet :: WWW/HTTP",
        "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
        "Topic :: Software Development :: Libraries :: Application Frameworks",
    ],
    keywords="asgi middleware caching anomaly-detection performance",
)
