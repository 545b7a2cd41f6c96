[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "topsql"
version = "0.1.0"
description = "Top SQL storage, query and HTTP handler layer for monitoring database clusters"
requires-python = ">=3.10"
dependencies = []
keywords = ["monitoring", "top-sql", "metrics", "timeseries", "sql"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["topsql"]

[tool.pytest.ini_options]
addopts = "-ra"
