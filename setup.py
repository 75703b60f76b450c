"""Setup script for dcat"""
from setuptools import setup
from pathlib import Path
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text(encoding="utf-8") if readme_path.exists() else ""
setup(
    name="dcat",
    version="1.0.0",
    author="Juan Manuel Rodriguez",
    description="Fast cat(1) replacement with hex dump and progress reporting",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["dcat"],
    python_requires=">=3.8",
    install_requires=["tqdm>=4.60.0"],
    extras_require={
        "dev": ["pytest>=6.0.0", "black>=22.0.0", "flake8>=4.0.0"],
    },
    entry_points={
        "console_scripts": [
            "dcat=dcat:cli_main",
        ],
    },
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Utilities",
        "Topic :: Text Processing",
    ],
)
