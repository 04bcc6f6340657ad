[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sdnkit"
version = "0.1.0"
description = "Building blocks for an overlay cluster network: VNID and subnet allocation, egress IP marks, iptables chains, a CNI request server and node metrics"
requires-python = ">=3.10"
dependencies = []
keywords = ["sdn", "vxlan", "vnid", "subnet", "iptables", "cni", "egress"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["sdnkit"]

[tool.pytest.ini_options]
addopts = "-ra"
