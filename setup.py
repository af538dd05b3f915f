import re

import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

with open("awgateway/__init__.py", "r") as fh:
    version_tuple = re.search(r"version_tuple = \((\d+), (\d+), (\d+)\)", fh.read()).groups()

setuptools.setup(
    name="awgateway",
    version=".".join(version_tuple),
    author="awgateway",
    description="Bridge Ecowitt / Ambient Weather gateway telemetry to MQTT and Home Assistant",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(),
    python_requires=">=3.9",
    install_requires=[
        'paho-mqtt>=2.0',
        'pydantic>=2.0',
        'pydantic-settings>=2.5',
        'python-dotenv',
        'tomli; python_version < "3.11"',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
