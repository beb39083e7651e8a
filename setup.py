# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

from os import path

from setuptools import find_packages, setup


here = path.abspath(path.dirname(__file__))
with open(path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="tinytftp",
    version="0.1",
    description="A lock-step TFTP server and client for python3",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    classifiers=[
        "Development Status :: 4 - Beta",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX",
        "Programming Language :: Python :: 3 :: Only",
        "Topic :: System :: Boot",
        "Topic :: Utilities",
        "Intended Audience :: Developers",
    ],
    keywords="tftp daemon client netboot",
    packages=find_packages(exclude=["tests"]),
    python_requires=">=3.7",
    extras_require={"test": ["pytest", "coverage"]},
    entry_points={
        "console_scripts": [
            "tinytftpd=tinytftp.cli:server_main",
            "tinytftp=tinytftp.cli:client_main",
        ]
    },
)
