"""
Setup script for torch-lfmmi.

Pure PyTorch: the forward-backward scans run on whatever device the score
matrix lives on, so there is no extension to build.

To install for development (with the test dependencies):
    pip install -e ".[test]"
"""

from pathlib import Path

from setuptools import find_packages, setup


def read_version():
    """Read ``__version__`` from the package without importing it (torch may be absent)."""
    init = Path(__file__).parent / "src" / "torch_lfmmi" / "__init__.py"
    for line in init.read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=")[1].strip().strip('"')
    raise RuntimeError("__version__ not found in src/torch_lfmmi/__init__.py")


def main():
    setup(
        name="torch-lfmmi",
        version=read_version(),
        description="Lattice-free MMI, sMBR and KL chain objectives for PyTorch",
        python_requires=">=3.9",
        package_dir={"": "src"},
        packages=find_packages("src"),
        install_requires=["torch>=2.0"],
        extras_require={"test": ["pytest>=7"]},
    )


if __name__ == "__main__":
    main()
