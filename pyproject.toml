[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "slokit"
version = "0.1.0"
description = "Building blocks for turning log lines and Prometheus query results into SLO events"
requires-python = ">=3.10"
keywords = ["slo", "sli", "monitoring", "prometheus", "relabel", "log tailing"]
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
dependencies = [
    "pyyaml",
    "httpx",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["slokit"]

[tool.pytest.ini_options]
addopts = "-ra"
