[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cabbagedb"
version = "0.1.0"
description = "Storage and consensus core of a small replicated database: a Bitcask key-value store, a Raft log and Raft nodes served over TCP."
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["database", "bitcask", "raft", "consensus", "key-value", "storage"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["cabbagedb"]

[tool.hatch.build.targets.sdist]
include = ["cabbagedb", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
