from setuptools import find_packages, setup

setup(
    name="bqvi",
    version="0.1.0",
    description="Bayesian-quadrature variational inference",
    packages=find_packages(include=["bqvi", "bqvi.*"]),
    package_data={"bqvi.inference": ["option_configs/*.ini"]},
    install_requires=[
        "numpy",
        "scipy",
        "gpyreg",
        "cma",
        "matplotlib",
        "corner",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "pytest-mock",
            "pytest-rerunfailures",
        ],
    },
)
