[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "seik8s"
version = "0.1.0"
description = "Reconcilers for Sei node pools and node groups against an in-memory Kubernetes-style object store"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "controller", "reconciler", "sei", "operator"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["seik8s"]

[tool.pytest.ini_options]
addopts = "-ra"
