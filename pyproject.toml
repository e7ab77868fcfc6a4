[build-system]
requires = ["setuptools>=61.0"]
build-backend = "setuptools.build_meta"

[project]
name = "sidekick"
version = "0.1.0"
description = "Receive Falco security events over HTTP and forward them to Alertmanager, Datadog, Discord, Elasticsearch, Fission and CloudEvents outputs"
requires-python = ">=3.10"
dependencies = [
    "requests",
    "pyyaml",
]
keywords = ["falco", "security", "alerts", "webhook", "forwarder", "monitoring"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
sidekick = "sidekick.handlers:main"

[tool.setuptools.packages.find]
include = ["sidekick*"]

[tool.pytest.ini_options]
addopts = "-ra"
