[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "blixt"
version = "0.3.0"
description = "Layer 4 load balancing for the Kubernetes Gateway API: control plane, data plane API server and developer tooling"
requires-python = ">=3.10"
keywords = [
    "kubernetes",
    "gateway-api",
    "load-balancer",
    "layer4",
    "tcp",
    "udp",
    "grpc",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]
dependencies = [
    "grpcio",
    "httpx",
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
    "cryptography",
]

[project.scripts]
blixt-controller = "blixt.gateway_controller:main"
blixt-xtask = "blixt.xtask:main"
blixt-udp-test-server = "blixt.udp_test_server:main"

[tool.hatch.build.targets.wheel]
packages = ["blixt"]

[tool.hatch.build.targets.sdist]
include = ["blixt", "tests", "pyproject.toml"]

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
