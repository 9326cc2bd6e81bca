# setup.py
from setuptools import setup, find_packages

setup(
    name="chunkpipe",
    version="0.1.0",
    description="Chunked parallel batch processing of large offset-addressable datasets",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.9",
    install_requires=[
        "numpy",
        "rocksdict",
        "setproctitle>=1.3",
        "tqdm",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
