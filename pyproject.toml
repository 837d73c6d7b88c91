[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "qslotctl"
version = "0.1.0"
description = "Inspect and switch A/B boot slots on Qualcomm-based Linux devices"
requires-python = ">=3.10"
dependencies = []
keywords = ["bootctrl", "a/b", "slots", "gpt", "ufs", "bsg", "qualcomm"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Boot",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
qslotctl = "qslotctl.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["qslotctl"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
