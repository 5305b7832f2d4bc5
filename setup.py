from setuptools import setup, find_packages

setup(
    name="tandem",
    version="0.1.0",
    description="AUR and repository package helper with layered dependency-ordered installs.",
    author="tandem developers",
    license="GPL-3.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "rich>=13.0.0",
        "typer>=0.9.0",
        "GitPython>=3.1.30",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "tandem=tandem.modules.cli:main",
        ],
    },
)
