[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "storefront"
version = "0.1.0"
description = "Storefront core: encrypted secrets, a bucketed key-value store, fulfillment handlers and background jobs"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = [
    "store",
    "point-of-sale",
    "fulfillment",
    "escrow",
    "print-on-demand",
    "digital-downloads",
    "aes-gcm",
]
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
    "Topic :: Office/Business :: Financial :: Point-Of-Sale",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["storefront"]

[tool.hatch.build.targets.sdist]
include = [
    "storefront",
    "tests",
    "pyproject.toml",
]

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
