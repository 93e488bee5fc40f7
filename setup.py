# Package installation script

from setuptools import setup, find_packages

setup(
    name="edge_gateway",
    version="0.1.0",
    packages=find_packages(where="src", exclude=["tests", "tests.*"]),
    package_dir={"": "src"},
    package_data={"edge_gateway": ["config/*.yml"]},
    entry_points={
        "console_scripts": [
            "edge_gateway=edge_gateway.__main__:main",
        ],
    },
    python_requires=">=3.9",
    install_requires=[
        "fastapi",
        "hypercorn",
        "pyyaml",
        "aiomqtt>=2.0",
        "aiocoap",
        "aiohttp",
        "aiosqlite",
        "pydantic>=2",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
