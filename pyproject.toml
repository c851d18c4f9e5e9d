[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "msgstm"
version = "0.1.0"
description = "A message-passing software transactional memory: service nodes guard addresses, application nodes run transactions against them"
requires-python = ">=3.10"
dependencies = []
keywords = ["transactional-memory", "stm", "message-passing", "contention-management", "pgas"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
msgstm = "msgstm.system:main"

[tool.hatch.build.targets.wheel]
packages = ["msgstm"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
