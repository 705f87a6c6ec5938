[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "oplogrelay"
version = "0.1.0"
description = "Move MongoDB oplog batches over file and TCP tunnels, with collision-safe batching, compression and checksums."
requires-python = ">=3.10"
dependencies = [
    "pymongo",
]
keywords = [
    "mongodb",
    "oplog",
    "replication",
    "tunnel",
    "change-data-capture",
]
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
    "Topic :: Database",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
oplogrelay-objectid = "oplogrelay.objectid_tool:main"

[tool.hatch.build.targets.wheel]
packages = ["oplogrelay"]

[tool.hatch.build.targets.sdist]
include = [
    "oplogrelay",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
