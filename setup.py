from setuptools import setup, find_packages

setup(
    name="iris-ann-bench",
    version="1.0",
    description="Recall benchmark for approximate nearest-neighbour search over masked iris codes.",
    packages=find_packages(exclude=["tests"]),
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.22",
        "numba>=0.57",
        "usearch>=2.9",
        "tqdm>=4.62",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "iris-ann-bench=iris_ann_bench.benchmark:main",
        ],
    },
)
