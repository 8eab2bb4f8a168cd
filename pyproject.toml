[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chatmigrator"
version = "0.1.0"
description = "Worker that moves ranges of per-user chat databases between MongoDB instances, coordinated through PostgreSQL."
requires-python = ">=3.10"
keywords = ["mongodb", "postgresql", "migration", "sharding", "worker"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
]
dependencies = [
    "pymongo",
    "sqlalchemy",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
chatmigrator = "chatmigrator.app:main"

[tool.hatch.build.targets.wheel]
packages = ["chatmigrator"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
