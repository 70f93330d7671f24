[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "avltree"
version = "0.1.0"
description = "A versioned, persistent, self-balancing Merkle AVL tree with a fast-storage key index"
requires-python = ">=3.10"
dependencies = []
keywords = ["avl", "merkle", "tree", "versioned", "key-value", "persistent"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["avltree"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
