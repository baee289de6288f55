[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fdinput"
version = "0.1.15"
description = "Input plugins for a log shipping pipeline: files, HTTP, journalctl, Kafka and Kubernetes logs"
requires-python = ">=3.10"
keywords = ["logging", "log-shipping", "tail", "offsets", "kubernetes", "journalctl", "kafka"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Logging",
]
dependencies = [
    "pyyaml",
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["fdinput"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
