from setuptools import setup, find_namespace_packages

setup(
    name="conductor",
    version="0.1.0",
    description="Declarative multi-service orchestrator with dependency-ordered, health-gated startup",
    packages=find_namespace_packages(where="src", include=["conductor", "conductor.*"]),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "psutil>=5.9",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
        "dev": [
            "pytest>=7.0",
            "black>=23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "conductor=conductor.CLI.main:main",
        ],
    },
)
