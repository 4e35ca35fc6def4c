[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "llmgate"
version = "0.0.6"
description = "Asynchronous LLM API gateway: OpenAI-compatible routing, virtual keys, budgets, rate limits, caching and audit logs"
requires-python = ">=3.10"
keywords = ["llm", "gateway", "proxy", "openai", "aiohttp", "streaming", "rate-limit"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Web Environment",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Internet :: Proxy Servers",
]
dependencies = [
    "aiohttp>=3.9",
    "aiosqlite>=0.19",
    "redis>=5.0.1",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["llmgate"]

[tool.hatch.build.targets.sdist]
include = ["llmgate", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
