"""
Setup script for crashguard.
Allows installation via: pip install -e .
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README for the long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding='utf-8') if readme_file.exists() else ""

setup(
    name="crashguard",
    version="1.0.0",
    description="Crash-safety guard and kill-injection verifier for SQLite data directories",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Your Name",
    python_requires=">=3.8",
    packages=find_packages(include=["core", "core.*", "utils", "utils.*",
                                    "harness", "harness.*", "workers", "workers.*"]),
    py_modules=["crashguard", "doctor"],
    include_package_data=True,
    install_requires=[
        "colorama>=0.4.4",
        "psutil>=5.8.0",
        "tqdm>=4.60.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        'console_scripts': [
            'crashguard=crashguard:main',
            'crashguard-doctor=doctor:main',
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Testing",
        "Topic :: Database",
        "Operating System :: POSIX",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
