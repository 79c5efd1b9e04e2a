from setuptools import setup

setup(
    name="dissect.findbad",
    version="1.0.0",
    packages=["dissect.findbad"],
    python_requires=">=3.9",
    install_requires=[
        "dissect.cstruct>=3.0.dev,<4.0.dev",
        "dissect.util>=3.0.dev,<4.0.dev",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "findbad=dissect.findbad.cli:main",
        ],
    },
)
