[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "scutdrcom"
version = "3.1.3"
description = "802.1X EAP and Dr.com UDP heartbeat client for campus network authentication"
requires-python = ">=3.10"
dependencies = []
keywords = ["802.1x", "eap", "eapol", "drcom", "authentication", "campus-network"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: End Users/Desktop",
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

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
scutdrcom = "scutdrcom.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["scutdrcom"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
