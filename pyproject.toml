[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pgsandbox"
version = "0.1.0"
description = "Building blocks for a PostgreSQL test sandbox: SQL statement classification, savepoint-based session state and protocol helpers."
requires-python = ">=3.10"
dependencies = []
keywords = ["postgresql", "testing", "sandbox", "savepoint", "transaction", "sql"]
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
    "Topic :: Database",
    "Topic :: Software Development :: Testing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["pgsandbox"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
