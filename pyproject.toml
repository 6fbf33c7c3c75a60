[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "trustguard"
version = "0.1.0"
description = "Trust database, path filter and file fingerprinting for application allow-listing"
requires-python = ">=3.10"
keywords = ["trust", "allowlist", "integrity", "lmdb", "elf", "security"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security",
]
dependencies = [
    "lmdb",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["trustguard"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
