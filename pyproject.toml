[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "threephase"
version = "0.1.0"
description = "A three-phase commit coordinator and key-value servers over a simulated, lossy in-process RPC network"
requires-python = ">=3.10"
dependencies = []
keywords = ["three-phase commit", "3pc", "distributed transactions", "rpc", "simulation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["threephase"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
