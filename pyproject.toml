[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "replidb"
version = "0.1.0"
description = "SQLite database layer with request marshaling, JSON result encoding and leader discovery for a replicated store"
requires-python = ">=3.11"
dependencies = []
keywords = ["sqlite", "database", "replication", "discovery", "json", "gzip"]
classifiers = [
    "Development Status :: 4 - Beta",
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

[tool.hatch.build.targets.wheel]
packages = ["replidb"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
