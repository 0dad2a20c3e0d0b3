from setuptools import setup, find_packages

setup(
    name="ctmsm",
    version="0.1.0",
    packages=find_packages(include=["ctmsm", "ctmsm.*"]),
    install_requires=[
        "torch>=2.0.0",
        "pandas>=2.0.0",
        "numpy>=1.23.0",
        "scipy>=1.11.0",
        "tqdm>=4.65.0",
        "networkx>=3.0",
        "lifelines>=0.27.0",
    ],
    extras_require={
        "dev": ["pytest>=7.3.1"],
    },
    python_requires=">=3.9",
    description="Continuous-time multi-state Markov models for panel-observed data",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
