from setuptools import setup, find_packages


setup(
    name="sheaf",
    version="0.1",
    packages=find_packages(include=["sheaf", "sheaf.*"]),
    description="A streaming directory-tree archiver with optional password protection.",
    python_requires=">=3.8",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "sheaf=sheaf.cli:main",
        ]
    },
)
