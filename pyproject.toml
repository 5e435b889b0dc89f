[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lineinbridge"
version = "1.9.1"
description = "Captures a line-in audio device and streams it as PCM to an audio server found over mDNS"
requires-python = ">=3.11"
keywords = ["audio", "line-in", "capture", "streaming", "mdns", "pcm", "websocket", "resampling"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: End Users/Desktop",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Sound/Audio :: Capture/Recording",
]
dependencies = [
    "numpy",
    "httpx",
    "websockets",
    "dnspython",
    "psutil",
    "tomli-w",
    "pygame",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
lox-linein-bridge = "lineinbridge.cli:main"
lineinbridge = "lineinbridge.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["lineinbridge"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
ignore_missing_imports = true
