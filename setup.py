#!/usr/bin/env python
import os
import setuptools


def _read_readme():
    root = os.path.dirname(os.path.abspath(__file__))
    path = os.path.join(root, "README.md")
    if not os.path.exists(path):
        return ""
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


if __name__ == "__main__":
    setuptools.setup(
        name="wsrcon",
        version="0.1.0",
        description="Non-blocking WebSocket remote console server",
        long_description=_read_readme(),
        long_description_content_type="text/markdown",
        packages=["wsrcon"],
        python_requires=">=3.8",
        install_requires=[
            "click",
            "pyyaml",
        ],
        extras_require={
            "test": [
                "pytest",
            ],
        },
        entry_points={
            "console_scripts": [
                "wsrcon=wsrcon.cli:main",
            ],
        },
        classifiers=[
            "Programming Language :: Python :: 3",
            "Operating System :: POSIX",
        ],
    )
