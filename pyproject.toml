[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cray"
version = "0.1.0"
description = "Inspect containerd containers, images, pods, mounts and runtime layout"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "containerd",
    "cri",
    "kubernetes",
    "containers",
    "oci",
    "snapshots",
    "mounts",
    "inspection",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["cray"]

[tool.hatch.build.targets.sdist]
include = ["cray", "tests", "README.md"]

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
