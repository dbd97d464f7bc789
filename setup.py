from setuptools import setup, find_packages

setup(
    name="trackml_seeding",
    version="0.1.0",
    description="Triplet seed finding for TrackML events on host and kernel-style parallel backends",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["trackml_seeding", "trackml_seeding.*"]),
    python_requires=">=3.10",
    install_requires=[
        # GitHub dependency for TrackML library
        "trackml @ git+https://github.com/LAL/trackml-library.git@master",

        # Runtime dependencies
        "numpy",
        "numba",
        "pandas",
        "matplotlib",
        "scipy",
        "networkx",
        "orjson",
    ],
    extras_require={
        # Optional speed/profiling stack
        "speed": [
            "scalene>=1.5.49; platform_system != 'Windows'",
            "py-spy>=0.3.14",
        ],
        # Developer extras
        "dev": [
            "pytest",
            "black",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            "trackml-seeding=trackml_seeding.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
