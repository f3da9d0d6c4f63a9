[build-system]
requires = ["hatchling>=1.18"]
build-backend = "hatchling.build"

[project]
name = "outboxrelay"
version = "0.1.0"
description = "Transactional outbox relay for PostgreSQL: delivers outbox rows at-least-once, in commit order, via logical replication or polling."
requires-python = ">=3.11"
dependencies = [
    "aiohttp>=3.9",
]
keywords = [
    "outbox",
    "transactional-outbox",
    "postgresql",
    "logical-replication",
    "pgoutput",
    "wal",
    "listen-notify",
    "messaging",
    "asyncio",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Database",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
    "aiohttp>=3.9",
]

[tool.hatch.build.targets.wheel]
packages = ["outboxrelay"]

[tool.hatch.build.targets.sdist]
include = [
    "outboxrelay",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
