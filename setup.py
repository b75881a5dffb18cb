"""
Fleet Simulator

Virtual IoT device fleet (buttons, smartwatches, repeaters) speaking MQTT,
with a failure-injection framework for exercising the systems behind them.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="fleet-sim",
    version="1.0.0",
    description="Virtual IoT device fleet with MQTT telemetry and failure injection",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["fleet_sim", "fleet_sim.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Testing",
        "Topic :: System :: Networking",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "flake8>=5.0.0",
            "mypy>=0.991",
        ],
    },
    entry_points={
        "console_scripts": [
            "fleet-sim=fleet_sim.cli:main",
        ],
    },
)
