from setuptools import setup, find_packages

setup(
    name="nlme_sim",
    version="1.0.0",
    description="A compartmental PK/PD model compiler and population simulator",
    author="Duy Nguyen",

    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.9",
    install_requires=[
        "numpy",
        "scipy",
        "sympy",
        "pandas",
        "joblib",
        "pydantic>=2",
        "structlog",
        "typer",
        "rich",
        "tomli; python_version < '3.11'",
        "tomli_w",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": ["nlme=nlme_sim.cli.main:app"],
    },
    include_package_data=True,
)
