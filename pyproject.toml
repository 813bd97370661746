[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "panelnode"
version = "0.1.0"
description = "Node controller that keeps proxy inbounds, users, limits and traffic reports in step with a management panel"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "proxy",
    "panel",
    "node",
    "vmess",
    "vless",
    "trojan",
    "shadowsocks",
    "traffic",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["panelnode"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
