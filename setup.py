"""
Setup script for blood-sc-integration package.
For compatibility with older build systems.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""

setup(
    name="blood-sc-integration",
    version="0.1.0",
    author="Blood Integration Research Team",
    description="Comparison of scRNA-seq integration methods on peripheral and whole-blood datasets",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "pandas>=1.5.0",
        "numpy>=1.21.0",
        "scipy>=1.9.0",
        "matplotlib>=3.6.0",
        "seaborn>=0.12.0",
        "scanpy>=1.10.0",
        "anndata>=0.9.0",
        "igraph>=0.10.0",
        "leidenalg>=0.10.0",
        "scanorama>=1.7.0",
        "harmonypy>=2.0",
        "scikit-learn>=1.1.0",
        "GEOparse>=2.0.3",
        "requests>=2.28.0",
        "tqdm>=4.64.0",
    ],
    extras_require={
        "liger": [
            "pyliger>=0.2.0",
        ],
        "louvain": [
            "louvain>=0.8.0",
        ],
        "dev": [
            "pytest>=7.0",
            "pytest-cov>=4.0",
            "black>=23.0",
            "flake8>=6.0",
            "mypy>=1.0",
        ],
    },
    include_package_data=True,
)
