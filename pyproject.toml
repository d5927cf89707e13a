[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "minitransformer"
version = "0.1.0"
description = "A small encoder-decoder transformer with its own reverse-mode autograd, built on numpy"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["transformer", "attention", "autograd", "neural-network", "numpy"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Education",
    "Intended Audience :: Science/Research",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
minitransformer = "minitransformer.train:main"

[tool.hatch.build.targets.wheel]
packages = ["minitransformer"]

[tool.pytest.ini_options]
addopts = "-ra"
