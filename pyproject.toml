[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cloudcost"
version = "0.1.0"
description = "Prometheus-style exporter of cloud cost metrics: EC2 instance and EBS volume hourly prices and S3 storage and operation costs."
requires-python = ">=3.10"
dependencies = []
keywords = ["prometheus", "exporter", "cloud", "cost", "aws", "ec2", "s3", "ebs", "monitoring"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Environment :: Web Environment",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
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
cloudcost-exporter = "cloudcost.exporter:main"

[tool.hatch.build.targets.wheel]
packages = ["cloudcost"]

[tool.hatch.build.targets.sdist]
include = ["cloudcost", "tests", "pyproject.toml"]

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
