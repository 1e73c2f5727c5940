[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "schemashift"
version = "0.1.0"
description = "Database schema migration drivers, version bookkeeping and a command-line tool for creating migration files"
requires-python = ">=3.10"
keywords = ["database", "migrations", "schema", "sqlite", "yugabytedb", "snowflake", "cli"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "backoff",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
schemashift = "schemashift.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["schemashift"]

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
