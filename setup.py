from setuptools import setup, find_namespace_packages

setup(
    name="e2ekit",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["e2ekit", "e2ekit.*"]),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "tenacity>=8.0",
        "jinja2>=3.0",
        "prometheus-client>=0.17",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "psutil>=5.9",
        ],
    },
    entry_points={
        "console_scripts": [
            "e2ekit=e2ekit.CLI.main:main",
        ],
    },
)
