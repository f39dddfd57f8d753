"""
SpeedCheck — adaptive multi-stream network speed test
HTTP server (aiohttp) + parallel-thread client (requests)
"""
from setuptools import setup, find_packages

setup(
    name="speedcheck",
    version="1.60.0",
    description="Adaptive multi-stream throughput, latency and jitter measurement",
    packages=find_packages(exclude=["tests*"]),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "requests>=2.28",
    ],
    extras_require={
        "test": [
            "pytest>=7",
            "pytest-aiohttp>=1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "speedcheck=speedcheck_server.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Networking :: Monitoring",
        "Programming Language :: Python :: 3.10",
    ],
)
