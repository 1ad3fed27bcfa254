[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "slamcore"
version = "0.1.0"
description = "Map, keyframe and map-point bookkeeping, two-view initialization, culling and loop detection and correction for keyframe-based visual SLAM"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["slam", "visual-odometry", "computer-vision", "keyframes", "loop-closing", "epipolar-geometry"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Image Processing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["slamcore"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
