from setuptools import setup, find_packages


setup(
    name="zipcommit",
    version="0.1",
    packages=find_packages(include=["zipcommit", "zipcommit.*"]),
    description="Crash-safe in-place editing of ZIP archives with per-entry authenticated encryption.",
    author="vercingetorx",
    python_requires=">=3.8",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
    ],
    extras_require={
        "zstd": ["zstandard>=0.22.0"],
    },
    entry_points={
        "console_scripts": [
            "zipcommit=zipcommit.cli:main",
        ]
    },
)
