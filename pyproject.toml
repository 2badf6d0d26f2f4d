[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "framehop"
version = "0.7.2"
description = "Stack frame unwinding rules and prologue/epilogue analysis for aarch64"
requires-python = ">=3.10"
dependencies = []
keywords = ["unwind", "stackwalk", "profiling", "debug", "aarch64"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Debuggers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["framehop"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
