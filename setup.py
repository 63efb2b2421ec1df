"""Packaging information for wsmirror."""

import sys

import setuptools

from wsmirror.constants import VERSION

if sys.version_info[:3] < (3, 8, 0):
    print("wsmirror requires Python 3.8 to run.")
    sys.exit(1)

install_requires = [
    "msgpack>=1.0.0",
    "pyzmq>=19.0.0",
    "lz4>=3.0.2",
    "semver>=2.9.1",
    "httpx>=0.23.0",
]

extras_require = {
    "dev": [
        "rope>=0.14.0",
        "flake8>=3.7.9",
        "flake8-docstrings>=1.5.0",
        "flake8-import-order>=0.18.1",
        "black>=19.10b0",
        "pylint>=2.4.4",
        "mypy>=0.770",
        "pytest>=5.4.1",
        "pytest-cov>=2.8.1",
    ]
}


def _long_description():
    with open("README.md") as f:
        return f.read()


setuptools.setup(
    name="wsmirror",
    version=VERSION,
    description="Keep a local view of a remote workspace's files coherent.",
    long_description=_long_description(),
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(),
    entry_points={"console_scripts": ["wsmirror = wsmirror.__main__:main"]},
    install_requires=install_requires,
    extras_require=extras_require,
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Operating System :: POSIX :: Linux",
        "Topic :: Software Development",
        "Topic :: System :: Filesystems",
    ],
    python_requires=">=3.8",
)
