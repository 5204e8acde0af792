from setuptools import setup, find_packages

setup(
    name="novum-lang",
    version="0.1.0",
    description="Novum — a small expression language compiled to LLVM IR",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "llvmlite>=0.44.0",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": [
            "novum=novum.cli:main",
        ],
    },
)
