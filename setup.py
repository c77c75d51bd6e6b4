"""
Keyward: access control for encrypted secrets
"""
from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="keyward",
    version="0.1.0",
    author="Keyward Contributors",
    description="Onboard, offboard and verify access to SOPS/age encrypted secrets",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "Topic :: Security :: Cryptography",
        "License :: Other/Proprietary License",  # CC BY-SA 4.0
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
    license="CC-BY-SA-4.0",
    python_requires=">=3.8",
    install_requires=[
        "cryptography>=41.0.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "keyward=keyward.cli:main",
            "kw=keyward.cli:main",
        ],
    },
)
