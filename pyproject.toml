[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rpcfilters"
version = "0.1.0"
description = "RPC filters: metadata blocking, request/response validation and RPC statistics with a sliding-window QPS meter"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = ["rpc", "filter", "interceptor", "metrics", "validation", "sliding-window", "percentile"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["rpcfilters"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
