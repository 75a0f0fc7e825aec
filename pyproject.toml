[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "slamkit"
version = "0.1.0"
description = "Building blocks for feature-based visual SLAM: ORB features, map bookkeeping, two-view geometry, local mapping and loop detection"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["slam", "orb", "computer-vision", "mapping", "loop-closure", "fast", "brief"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Processing",
]

[project.optional-dependencies]
test = [
    "pytest",
    "numpy",
]

[tool.hatch.build.targets.wheel]
packages = ["slamkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
