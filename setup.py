from pathlib import Path
import re

from setuptools import find_packages, setup


def read_version(root: Path) -> str:
    """Return ``__version__`` from the package without importing it."""
    text = (root / "raysnipe" / "__init__.py").read_text()
    match = re.search(r'^__version__ = "([^"]+)"', text, re.M)
    if not match:
        raise RuntimeError("unable to find __version__ in raysnipe/__init__.py")
    return match.group(1)


ROOT = Path(__file__).parent

setup(
    name="raysnipe",
    version=read_version(ROOT),
    description="Raydium V4 AMM trading core: pool discovery, quoting, swaps and sniping",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "orjson>=3.9",
        "pydantic>=2.5",
        "solana>=0.34,<0.40",
        "solders>=0.21",
    ],
    extras_require={
        "test": ["pytest>=7", "pytest-asyncio>=0.23"],
    },
)
