import os
from setuptools import setup

if os.name != "nt":
    entry_points = {
        "console_scripts": [
            "tegrakeys=tegrakeys.__init__:_main",
        ],
    }
else:
    entry_points = {
        "console_scripts": [
            "tegrakeys=tegrakeys.__init__:_main",
            # Windows users tend to call the tool with its file suffix
            "tegrakeys.py=tegrakeys.__init__:_main",
        ],
    }

setup(
    name="tegrakeys",
    version="1.0.0",
    description="NVIDIA Jetson (Tegra) secure boot key provisioning tool",
    license="GPL-2.0-or-later",
    python_requires=">=3.10",
    packages=["tegrakeys", "tegrakeys.nethsm"],
    install_requires=[
        "rich_click",
        "cryptography>=42.0.0",
        "httpx>=0.24",
    ],
    extras_require={
        "test": [
            "pytest",
            "coverage~=6.0",
        ],
    },
    entry_points=entry_points,
)
