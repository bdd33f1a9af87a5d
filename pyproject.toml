[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vrcpulse"
version = "1.0.0"
description = "Collects VRChat service status, incidents, maintenances and metrics into SQLite and raises threshold alerts from user reports"
requires-python = ">=3.11"
keywords = ["vrchat", "status", "monitoring", "statuspage", "metrics", "sqlite", "alerts"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "aiosqlite>=0.19",
    "httpx>=0.25",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
    "respx>=0.20",
]

[project.scripts]
vrcpulse = "vrcpulse.collector:main"
vrcpulse-migrate = "vrcpulse.schema:main"

[tool.hatch.build.targets.wheel]
packages = ["vrcpulse"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
