[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "znpadapter"
version = "0.1.0"
description = "Z-Stack ZNP coordinator adapter: serial framing, message layouts and request handling"
requires-python = ">=3.10"
dependencies = []
keywords = ["zigbee", "z-stack", "znp", "coordinator", "home automation"]
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
    "Topic :: Home Automation",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["znpadapter"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
