[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "osprey"
version = "0.1.0"
description = "A persistent key-value server with a line-oriented text protocol, write-ahead log and snapshots"
requires-python = ">=3.11"
dependencies = []
keywords = ["key-value", "database", "server", "wal", "snapshot", "cache"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
osprey = "osprey.server:main"
osprey-cli = "osprey.cli:main"
osprey-bench = "osprey.bench:main"

[tool.hatch.build.targets.wheel]
packages = ["osprey"]

[tool.pytest.ini_options]
addopts = "-ra"
