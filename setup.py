from setuptools import setup, find_packages

setup(
    name="udp-rpc",
    version="0.1.0",
    description="Minimal RPC over UDP with retry, timeout and at-most-once deduplication",
    author="udp-rpc Team",
    packages=find_packages(exclude=["tests", "tests.*", "examples", "examples.*"]),
    install_requires=[
        "protobuf>=3.19.0",
        "opentelemetry-api>=1.14.0",
        "opentelemetry-sdk>=1.14.0",
        "opentelemetry-exporter-otlp>=1.14.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-benchmark",
            "pytest-cov",
            "black",
            "isort",
            "pylint",
        ],
    },
    entry_points={
        "console_scripts": [
            "udp-rpc=udp_rpc.cli:main",
        ],
    },
    python_requires=">=3.9",
)
