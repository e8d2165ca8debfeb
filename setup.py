"""
Setup script for the IAM Provisioner.
"""

from setuptools import find_packages, setup

with open("requirements.txt") as f:
    requirements = [line for line in f.read().splitlines() if line and not line.startswith("#")]

with open("README.md", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="iam-provisioner",
    version="1.0.0",
    author="IAM Provisioner Team",
    author_email="team@example.com",
    description="Declarative provisioning of AWS IAM users, credentials and group memberships",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/iam-provisioner",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Information Technology",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Systems Administration",
        "Topic :: Security",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "pytest-mock>=3.10.0",
            "httpx>=0.24.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.0.0",
            "pre-commit>=3.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "iamctl=iam_provisioner.cli.iamctl:main",
        ],
    },
)
