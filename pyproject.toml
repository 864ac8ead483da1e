[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dhtstore"
version = "1.0.0"
description = "Storage layer for a distributed key-value hash table server: expiring key-value stores, sub-key indexes, configuration loading, statistics files and binlog replay"
requires-python = ">=3.10"
dependencies = []
keywords = ["dht", "key-value", "storage", "binlog", "recovery", "sqlite"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["dhtstore"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
