[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "orbmap"
version = "0.1.0"
description = "Keyframe and map-point bookkeeping for visual SLAM: covisibility graph, bag-of-words vocabulary files, place recognition and loop detection"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["slam", "orb", "keyframe", "covisibility", "bag-of-words", "loop-closure", "computer-vision"]
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
    "Topic :: Scientific/Engineering :: Image Recognition",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["orbmap"]

[tool.pytest.ini_options]
addopts = "-ra"
